# Overview: Payment reconciliation engine; applies gateway status to orders from every trigger.

"""
Payment Reconciliation Engine

WHY: The gateway is the authority on whether money moved, but it reaches us
through three unreliable channels that race each other:

    callback (browser redirect)  --\
    IPN webhook (server to server) --> reconcile() --> Order + timeline
    admin refresh (single / bulk)  --/

All of them funnel into reconcile(), which is the only code that writes
payment_status.

RULES:
1. Raw status strings are mapped by case-insensitive substring match,
   first rule wins (see STATUS_RULES). Unrecognised strings leave
   payment_status alone and are only recorded as transaction_status.
2. Re-applying the status an order already has is a no-op: bookkeeping
   (transaction_status, last_payment_check) is refreshed, but no timeline
   entry is written and no notification fires.
3. A genuine transition into "paid" stamps paid_at/payment_completed_at,
   assigns a tracking number if the order has none, appends one timeline
   entry and fires the payment-confirmed notification after commit.
4. Once paid (or refunded), later pending/failed reports do not downgrade
   the order. They are recorded as transaction_status and logged.
5. Each attempt is one optimistic unit of work: a concurrent writer makes
   the commit fail on version_id, the attempt is re-run from a fresh read,
   and rule 2 turns the duplicate into a no-op.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Mapping

from flask import current_app

from ..extensions import db
from ..models import Order
from ..validation import ValidationError, normalize_kenyan_phone
from storefront.time_utils import utcnow, to_utc_z
from . import notification_service
from .concurrency import lock_for_update, run_with_retry
from .order_service import (
    FULFILLMENT_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
    OrderError,
    OrderNotFound,
    TimelineSource,
    append_timeline,
    find_by_tracking_id,
    find_order,
    generate_tracking_number,
    get_order,
)
from .pesapal_gateway import GatewayError, PaymentInitiation, get_gateway


# =============================================================================
# STATUS MAPPING
# =============================================================================

STATUS_RULES = (
    (("completed", "success", "successful"), PAYMENT_PAID),
    (("pending", "processing"), PAYMENT_PENDING),
    (("failed", "cancelled", "cancel"), PAYMENT_FAILED),
    (("invalid", "error"), PAYMENT_FAILED),
)

SETTLED_PAYMENT_STATUSES = {PAYMENT_PAID, PAYMENT_REFUNDED}

# Window messages understood by the checkout popup opener.
SIGNAL_SUCCESS = "pesapal-payment-success"
SIGNAL_PENDING = "pesapal-payment-pending"
SIGNAL_FAILED = "pesapal-payment-failed"

# IPN notification types that carry their own outcome; anything else re-queries.
IPN_TYPE_STATUS = {
    "COMPLETED": "completed",
    "FAILED": "failed",
    "CANCELLED": "cancelled",
}

# Callback parameter aliases, in lookup order.
CALLBACK_TRACKING_KEYS = ("pesapal_transaction_tracking_id", "OrderTrackingId", "orderTrackingId")
CALLBACK_REFERENCE_KEYS = (
    "pesapal_merchant_reference",
    "OrderMerchantReference",
    "orderId",
    "merchant_reference",
)


def map_status(raw_status: str | None) -> str | None:
    """
    Map a raw gateway status to an internal payment status.

    Returns None when the string matches no rule (payment status unchanged).
    """
    if not raw_status:
        return None
    lowered = raw_status.lower()
    for needles, status in STATUS_RULES:
        if any(needle in lowered for needle in needles):
            return status
    return None


def signal_for(payment_status: str) -> str:
    if payment_status == PAYMENT_PAID:
        return SIGNAL_SUCCESS
    if payment_status == PAYMENT_FAILED:
        return SIGNAL_FAILED
    return SIGNAL_PENDING


# =============================================================================
# ERRORS
# =============================================================================

class NoTrackingId(OrderError):
    code = "no_tracking_id"

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order {order_number} has no transaction tracking id")


class MalformedCallback(OrderError):
    code = "malformed_callback"

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Payment notification is missing: {', '.join(missing)}")


class PaymentNotAllowed(OrderError):
    code = "payment_not_allowed"

    def __init__(self, order_number: str, reason: str):
        self.order_number = order_number
        self.reason = reason
        super().__init__(f"Order {order_number} {reason}")


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class ReconcileResult:
    order_id: int
    order_number: str
    changed: bool
    previous_status: str
    new_status: str
    transaction_status: str | None
    payment_confirmed: bool = False
    lookup_error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# CORE
# =============================================================================

def _default_note(new_status: str, raw_status: str, source: str) -> str:
    if new_status == PAYMENT_PAID:
        return f"Payment confirmed via {source} ({raw_status})"
    if new_status == PAYMENT_FAILED:
        return f"Payment failed via {source} ({raw_status})"
    return f"Payment status {new_status} via {source} ({raw_status})"


def apply_payment_status(
    order: Order,
    raw_status: str,
    *,
    source: TimelineSource,
    note: str | None = None,
) -> ReconcileResult:
    """
    Apply a raw gateway status to an order inside the current session.

    Does not commit and does not notify; reconcile() owns both.
    """
    now = utcnow()
    previous = order.payment_status
    mapped = map_status(raw_status)

    order.transaction_status = (raw_status or "")[:128] or None
    order.last_payment_check = now

    new_status = previous
    if mapped is not None and mapped != previous:
        if previous in SETTLED_PAYMENT_STATUSES:
            current_app.logger.warning(
                "Ignoring %s report '%s' for settled order %s (payment_status=%s)",
                source, raw_status, order.order_number, previous,
            )
        else:
            new_status = mapped

    changed = new_status != previous
    if changed:
        order.payment_status = new_status
        if new_status == PAYMENT_PAID:
            order.paid_at = now
            order.payment_completed_at = now
            order.payment_error = None
            if not order.tracking_number:
                order.tracking_number = generate_tracking_number()
        elif new_status == PAYMENT_FAILED:
            order.payment_failed_at = now
        append_timeline(order, note or _default_note(new_status, raw_status, source), source=source)

    return ReconcileResult(
        order_id=order.id,
        order_number=order.order_number,
        changed=changed,
        previous_status=previous,
        new_status=new_status,
        transaction_status=order.transaction_status,
        payment_confirmed=changed and new_status == PAYMENT_PAID,
    )


def reconcile(
    order_id: int,
    raw_status: str,
    *,
    source: TimelineSource,
    tracking_id: str | None = None,
    note: str | None = None,
) -> ReconcileResult:
    """
    Reconcile one order against a raw gateway status as a single atomic attempt.

    Args:
        order_id: Primary key of the order
        raw_status: Status string as reported by the gateway
        source: Trigger name recorded on the timeline
        tracking_id: Gateway tracking id to record on the order (optional)
        note: Timeline note override (optional)

    Returns:
        ReconcileResult describing the before/after payment status

    Raises:
        OrderNotFound: If the order vanished
    """
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise OrderNotFound(order_id)
        if tracking_id and order.transaction_tracking_id != tracking_id:
            order.transaction_tracking_id = tracking_id
        result = apply_payment_status(order, raw_status, source=source, note=note)
        db.session.commit()
        return order, result

    order, result = run_with_retry(_op)

    if result.changed:
        current_app.logger.info(
            "Order %s payment status %s -> %s via %s",
            result.order_number, result.previous_status, result.new_status, source,
        )
    if result.payment_confirmed:
        notification_service.notify_payment_confirmed(order)
    return result


# =============================================================================
# ENTRY POINTS
# =============================================================================

def _first_present(sources: tuple[Mapping, ...], keys: tuple[str, ...]) -> str | None:
    for src in sources:
        # JSON bodies may be lists or bare strings; those carry no fields.
        if not isinstance(src, Mapping):
            continue
        for key in keys:
            value = src.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
    return None


def extract_callback_params(body: Mapping | None, query: Mapping | None) -> tuple[str | None, str | None]:
    """Pick tracking id and merchant reference, body before query string."""
    sources = (body or {}, query or {})
    return (
        _first_present(sources, CALLBACK_TRACKING_KEYS),
        _first_present(sources, CALLBACK_REFERENCE_KEYS),
    )


def handle_callback(body: Mapping | None, query: Mapping | None) -> tuple[str, ReconcileResult]:
    """
    Process the browser redirect that follows gateway checkout.

    Returns:
        (signal, result) where signal is one of the SIGNAL_* window messages

    Raises:
        MalformedCallback: tracking id or merchant reference absent
        OrderNotFound: no order for the merchant reference
    """
    tracking_id, reference = extract_callback_params(body, query)
    missing = [name for name, value in (("tracking id", tracking_id), ("merchant reference", reference)) if not value]
    if missing:
        raise MalformedCallback(missing)

    order = find_order(reference) or find_by_tracking_id(tracking_id)
    if order is None:
        raise OrderNotFound(reference)

    status = get_gateway().get_transaction_status(tracking_id)
    raw_status = status.raw_status
    if status.lookup_failed and current_app.config.get("PAYMENT_CALLBACK_ASSUME_COMPLETED", True):
        current_app.logger.warning(
            "Status lookup failed for order %s (%s); assuming completed from callback",
            order.order_number, status.error,
        )
        raw_status = "completed"

    result = reconcile(order.id, raw_status, source="callback", tracking_id=tracking_id)
    result.lookup_error = status.error
    return signal_for(result.new_status), result


def handle_ipn(payload: Mapping) -> ReconcileResult:
    """
    Process an IPN notification.

    The order is located by OrderTrackingId first, OrderMerchantReference
    second. COMPLETED/FAILED/CANCELLED carry their own outcome; any other
    notification type (UPDATE, IPNCHANGE, missing) re-queries the gateway.

    Raises:
        MalformedCallback: neither correlation field present
        OrderNotFound: no order matches
        NoTrackingId: a re-query is needed but no tracking id is known
    """
    tracking_id = _first_present((payload,), ("OrderTrackingId",))
    reference = _first_present((payload,), ("OrderMerchantReference",))
    notification_type = (_first_present((payload,), ("OrderNotificationType",)) or "").upper()

    if not tracking_id and not reference:
        raise MalformedCallback(["OrderTrackingId", "OrderMerchantReference"])

    order = find_by_tracking_id(tracking_id) or find_order(reference)
    if order is None:
        raise OrderNotFound(tracking_id or reference)

    raw_status = IPN_TYPE_STATUS.get(notification_type)
    lookup_error = None
    if raw_status is None:
        query_id = tracking_id or order.transaction_tracking_id
        if not query_id:
            raise NoTrackingId(order.order_number)
        status = get_gateway().get_transaction_status(query_id)
        raw_status = status.raw_status
        lookup_error = status.error

    result = reconcile(order.id, raw_status, source="ipn", tracking_id=tracking_id)
    result.lookup_error = lookup_error
    return result


def refresh_payment(reference) -> ReconcileResult:
    """
    Re-query the gateway for one order (admin or scheduled trigger).

    Raises:
        OrderNotFound: no such order
        NoTrackingId: payment was never initiated with the gateway
    """
    order = get_order(reference)
    if not order.transaction_tracking_id:
        raise NoTrackingId(order.order_number)

    status = get_gateway().get_transaction_status(order.transaction_tracking_id)
    result = reconcile(order.id, status.raw_status, source="refresh")
    result.lookup_error = status.error
    return result


def bulk_refresh(references) -> dict:
    """
    Refresh many orders sequentially; each order succeeds or fails on its own.

    Raises:
        ValidationError: references is not a non-empty list or exceeds the batch cap
    """
    if not isinstance(references, list) or not references:
        raise ValidationError("order_ids must be a non-empty list")
    limit = current_app.config.get("BULK_REFRESH_MAX_ORDERS", 100)
    if len(references) > limit:
        raise ValidationError(f"At most {limit} orders can be refreshed per request")

    results = []
    for reference in references:
        try:
            result = refresh_payment(reference)
            results.append({
                "order_id": reference,
                "order_number": result.order_number,
                "success": True,
                "old_status": result.previous_status,
                "new_status": result.new_status,
                "changed": result.changed,
                "transaction_status": result.transaction_status,
                "lookup_error": result.lookup_error,
            })
        except (OrderError, GatewayError) as exc:
            db.session.rollback()
            results.append({"order_id": reference, "success": False, "error": str(exc), "code": exc.code})
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Failed to refresh payment for order %s", reference)
            results.append({"order_id": reference, "success": False, "error": "Internal error", "code": "internal_error"})

    success_count = sum(1 for r in results if r["success"])
    current_app.logger.info(
        "Bulk payment refresh completed: %d successful, %d failed",
        success_count, len(results) - success_count,
    )
    return {
        "total_processed": len(results),
        "success_count": success_count,
        "error_count": len(results) - success_count,
        "results": results,
    }


def refresh_unpaid_orders(limit: int = 50) -> dict:
    """
    Scheduled sweep: refresh unpaid orders that already have a tracking id,
    oldest check first.
    """
    orders = (
        db.session.query(Order.id)
        .filter(
            Order.transaction_tracking_id.isnot(None),
            Order.payment_status.in_([PAYMENT_PENDING, PAYMENT_PROCESSING]),
            Order.fulfillment_status != FULFILLMENT_CANCELLED,
        )
        .order_by(Order.last_payment_check.is_(None).desc(), Order.last_payment_check.asc(), Order.id.asc())
        .limit(limit)
        .all()
    )
    if not orders:
        return {"total_processed": 0, "success_count": 0, "error_count": 0, "results": []}
    return bulk_refresh([row.id for row in orders])


def get_payment_status(reference) -> dict:
    """
    Payment fields for an order, refreshed from the gateway first when the
    order is unpaid and has a tracking id.
    """
    order = get_order(reference)
    refreshed = False
    if order.transaction_tracking_id and order.payment_status not in SETTLED_PAYMENT_STATUSES:
        status = get_gateway().get_transaction_status(order.transaction_tracking_id)
        if not status.lookup_failed:
            reconcile(order.id, status.raw_status, source="refresh")
            refreshed = True
        order = get_order(reference)

    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "payment_status": order.payment_status,
        "transaction_status": order.transaction_status,
        "transaction_tracking_id": order.transaction_tracking_id,
        "total_amount_cents": order.total_amount_cents,
        "payment_initiated_at": to_utc_z(order.payment_initiated_at),
        "payment_completed_at": to_utc_z(order.payment_completed_at),
        "last_payment_check": to_utc_z(order.last_payment_check),
        "status_refreshed": refreshed,
    }


# =============================================================================
# PAYMENT INITIATION
# =============================================================================

def initiate_payment(
    reference,
    *,
    phone: str,
    email: str | None = None,
    description: str = "Order Payment",
) -> PaymentInitiation:
    """
    Start a hosted-checkout payment for an order.

    Raises:
        OrderNotFound: no such order
        PaymentNotAllowed: order paid or refunded, payment in flight, or cancelled;
            checked again after the gateway call
        ValidationError: phone missing/invalid
        GatewayError (and subclasses): the gateway refused or is unreachable;
            the order is marked failed before the error propagates
    """
    order = get_order(reference)
    _ensure_payment_allowed(order)

    phone = normalize_kenyan_phone(phone)
    amount = (Decimal(order.total_amount_cents) / 100).quantize(Decimal("0.01"))
    order_id, order_number = order.id, order.order_number

    try:
        initiation = get_gateway().initiate_payment(
            order_number, amount, phone, email or order.ship_email, description
        )
    except GatewayError as exc:
        current_app.logger.warning("Payment initiation failed for order %s: %s", order_number, exc)
        _record_initiation_failure(order_id, exc)
        raise

    def _op():
        locked = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if locked is None:
            raise OrderNotFound(order_number)
        # The gateway call is slow; an IPN or a second checkout may have landed meanwhile.
        _ensure_payment_allowed(locked)
        locked.payment_status = PAYMENT_PROCESSING
        locked.transaction_tracking_id = initiation.tracking_id
        locked.payment_initiated_at = utcnow()
        locked.payment_error = None
        append_timeline(locked, f"Payment initiated (tracking id {initiation.tracking_id})", source="payment")
        db.session.commit()

    try:
        run_with_retry(_op)
    except PaymentNotAllowed:
        db.session.rollback()
        current_app.logger.warning(
            "Discarding checkout %s for order %s: order changed during initiation",
            initiation.tracking_id, order_number,
        )
        raise
    current_app.logger.info("Payment initiated for order %s", order_number)
    return initiation


def _ensure_payment_allowed(order: Order) -> None:
    if order.payment_status in SETTLED_PAYMENT_STATUSES:
        raise PaymentNotAllowed(order.order_number, f"is already {order.payment_status}")
    if order.payment_status == PAYMENT_PROCESSING:
        raise PaymentNotAllowed(order.order_number, "already has a payment being processed")
    if order.fulfillment_status == FULFILLMENT_CANCELLED:
        raise PaymentNotAllowed(order.order_number, "has been cancelled")


def _record_initiation_failure(order_id: int, exc: GatewayError) -> None:
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None or order.payment_status in SETTLED_PAYMENT_STATUSES:
            return
        order.payment_status = PAYMENT_FAILED
        order.payment_error = str(exc)[:1000]
        order.payment_failed_at = utcnow()
        append_timeline(order, f"Payment initiation failed ({exc.code})", source="payment")
        db.session.commit()

    run_with_retry(_op)
