# Overview: Flask CLI command groups for order inspection and payment maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to storefront (PowerShell: $env:FLASK_APP="storefront").
# - Use: python -m flask <group> <command> [options]
#
# Order inspection/maintenance:
# - python -m flask orders show ORD-1718000000000-K3J9QZ
#   Print an order with items and timeline (accepts id or order number).
# - python -m flask orders refresh-payments --limit 50
#   Re-query the gateway for unpaid orders that have a tracking id.
#   This is the cron entry point for payment reconciliation.
#
# Gateway setup:
# - python -m flask pesapal register-ipn --url https://shop.example.com/api/payments/pesapal/ipn
#   Register the IPN webhook and print the notification id for PESAPAL_IPN_ID.

import click
from flask.cli import with_appcontext

from .services import reconciliation_service
from .services.order_service import OrderNotFound, get_order
from .services.pesapal_gateway import GatewayError, get_gateway


# =============================================================================
# ORDER COMMANDS
# =============================================================================

@click.group('orders')
def orders_group():
    """Order inspection and payment maintenance commands."""


@orders_group.command('show')
@click.argument('reference')
@with_appcontext
def show_order_cli(reference):
    """Show one order by id or order number."""
    try:
        order = get_order(reference)
    except OrderNotFound as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    click.echo("\n" + "="*80)
    click.echo(f"Order {order.order_number} (ID: {order.id})")
    click.echo("="*80)
    click.echo(f"Fulfillment: {order.fulfillment_status}")
    click.echo(f"Payment:     {order.payment_status} ({order.transaction_status or '-'})")
    click.echo(f"Tracking id: {order.transaction_tracking_id or '-'}")
    click.echo(f"Tracking #:  {order.tracking_number or '-'}")
    click.echo(f"Total:       {order.total_amount_cents / 100:.2f}")
    click.echo(f"Customer:    {order.ship_full_name} <{order.ship_email}> {order.ship_phone}")

    click.echo(f"\n{'Qty':<5} {'Ref':<15} {'Name':<40} {'Unit'}")
    for item in order.items:
        click.echo(f"{item.quantity:<5} {item.product_ref:<15} {item.name[:40]:<40} {item.unit_price_cents / 100:.2f}")

    click.echo("\nTimeline:")
    for entry in order.timeline:
        changed = entry.changed_at.strftime('%Y-%m-%d %H:%M:%S') if entry.changed_at else '-'
        click.echo(f"  {changed}  {entry.status:<12} {entry.source:<9} {entry.note}")
    click.echo("="*80 + "\n")


@orders_group.command('refresh-payments')
@click.option('--limit', type=int, default=50, show_default=True, help='Maximum orders to refresh')
@with_appcontext
def refresh_payments_cli(limit):
    """
    Reconcile unpaid orders against the gateway.

    Example:
        flask orders refresh-payments
        flask orders refresh-payments --limit 200
    """
    if limit < 1:
        click.echo("FAIL --limit must be at least 1")
        raise SystemExit(1)

    summary = reconciliation_service.refresh_unpaid_orders(limit=limit)
    if summary["total_processed"] == 0:
        click.echo("No unpaid orders with a tracking id.")
        return

    for result in summary["results"]:
        if result["success"]:
            marker = "CHANGED" if result["changed"] else "SAME   "
            note = f" (lookup failed: {result['lookup_error']})" if result.get("lookup_error") else ""
            click.echo(f"{marker} {result['order_number']}: {result['old_status']} -> {result['new_status']}{note}")
        else:
            click.echo(f"FAIL    {result['order_id']}: {result['error']}")

    click.echo(
        f"\nDONE {summary['total_processed']} processed, "
        f"{summary['success_count']} successful, {summary['error_count']} failed"
    )


# =============================================================================
# GATEWAY COMMANDS
# =============================================================================

@click.group('pesapal')
def pesapal_group():
    """PesaPal gateway setup commands."""


@pesapal_group.command('register-ipn')
@click.option('--url', required=True, help='Public URL of /api/payments/pesapal/ipn')
@with_appcontext
def register_ipn_cli(url):
    """Register the IPN webhook URL with PesaPal."""
    try:
        ipn_id = get_gateway().register_ipn(url)
    except GatewayError as e:
        click.echo(f"FAIL IPN registration failed: {e}")
        raise SystemExit(1)

    click.echo(f"PASS Registered IPN: {ipn_id}")
    click.echo(f"Set PESAPAL_IPN_ID={ipn_id} to reuse it.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(orders_group)
    app.cli.add_command(pesapal_group)
