# Overview: Order store operations: creation, lookup, timeline append, listing and deletion.

"""
Order Store

DESIGN PRINCIPLES:
- Orders are created once (checkout) and then mutated only by the
  reconciliation engine (payment fields) and the fulfillment state
  machine (fulfillment fields).
- Every mutating operation appends exactly one timeline entry.
- A paid order is never deleted; it must be cancelled instead.
"""

from __future__ import annotations

import secrets
import string
from typing import Literal

from sqlalchemy import or_

from ..extensions import db
from ..models import Order, OrderItem, OrderTimelineEntry
from ..validation import ItemInput, ShippingInput, ValidationError
from storefront.time_utils import epoch_millis, utcnow
from . import notification_service
from .concurrency import lock_for_update, run_with_retry


# =============================================================================
# STATUS VALUES (must match models/orders.py defaults)
# =============================================================================

FULFILLMENT_PENDING = "pending"
FULFILLMENT_PROCESSING = "processing"
FULFILLMENT_FULFILLED = "fulfilled"
FULFILLMENT_READY = "ready"
FULFILLMENT_PICKED_UP = "picked_up"
FULFILLMENT_SHIPPED = "shipped"
FULFILLMENT_DELIVERED = "delivered"
FULFILLMENT_CANCELLED = "cancelled"
FULFILLMENT_PENDING_SPLIT_PAYMENT = "pending_split_payment"
FULFILLMENT_PENDING_BANK_TRANSFER = "pending_bank_transfer"

FULFILLMENT_STATUSES = {
    FULFILLMENT_PENDING,
    FULFILLMENT_PROCESSING,
    FULFILLMENT_FULFILLED,
    FULFILLMENT_READY,
    FULFILLMENT_PICKED_UP,
    FULFILLMENT_SHIPPED,
    FULFILLMENT_DELIVERED,
    FULFILLMENT_CANCELLED,
    FULFILLMENT_PENDING_SPLIT_PAYMENT,
    FULFILLMENT_PENDING_BANK_TRANSFER,
}
TERMINAL_FULFILLMENT_STATUSES = {FULFILLMENT_DELIVERED, FULFILLMENT_CANCELLED}

PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

PAYMENT_STATUSES = {PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_REFUNDED}

TimelineSource = Literal["checkout", "callback", "ipn", "refresh", "admin", "cli", "payment"]

_CODE_ALPHABET = string.ascii_uppercase + string.digits


# =============================================================================
# ERRORS
# =============================================================================

class OrderError(Exception):
    """
    Base class for order-domain failures.

    code is a stable machine-readable identifier so callers can branch
    without parsing messages.
    """
    code = "order_error"


class OrderNotFound(OrderError):
    code = "order_not_found"

    def __init__(self, reference):
        self.reference = reference
        super().__init__(f"Order {reference} not found")


class OrderDeletionForbidden(OrderError):
    code = "order_deletion_forbidden"

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(
            f"Order {order_number} has been paid and cannot be deleted; cancel it instead"
        )


# =============================================================================
# IDENTIFIERS
# =============================================================================

def _random_code(length: int) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def generate_order_number() -> str:
    """ORD-<epoch millis>-<random>"""
    return f"ORD-{epoch_millis()}-{_random_code(6)}"


def generate_tracking_number() -> str:
    """TRK-<epoch millis>-<6 uppercase alphanumerics>"""
    return f"TRK-{epoch_millis()}-{_random_code(6)}"


# =============================================================================
# LOOKUP
# =============================================================================

def _reference_filter(reference):
    ref = str(reference).strip()
    if ref.isdigit():
        return or_(Order.id == int(ref), Order.order_number == ref)
    return Order.order_number == ref


def find_order(reference, *, for_update: bool = False) -> Order | None:
    """Resolve an order by numeric id or order number."""
    if reference is None or not str(reference).strip():
        return None
    query = db.session.query(Order).filter(_reference_filter(reference))
    if for_update:
        query = lock_for_update(query)
    return query.first()


def get_order(reference, *, for_update: bool = False) -> Order:
    order = find_order(reference, for_update=for_update)
    if order is None:
        raise OrderNotFound(reference)
    return order


def find_by_tracking_id(tracking_id: str, *, for_update: bool = False) -> Order | None:
    if not tracking_id:
        return None
    query = db.session.query(Order).filter(Order.transaction_tracking_id == tracking_id)
    if for_update:
        query = lock_for_update(query)
    return query.first()


def list_orders(
    *,
    fulfillment_status: str | None = None,
    payment_status: str | None = None,
    page: int = 1,
    per_page: int = 20,
    newest_first: bool = True,
) -> dict:
    """Paginated order listing for the admin dashboard."""
    if fulfillment_status and fulfillment_status not in FULFILLMENT_STATUSES:
        raise ValidationError(f"Unknown fulfillment status '{fulfillment_status}'")
    if payment_status and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status '{payment_status}'")

    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)

    query = db.session.query(Order)
    if fulfillment_status:
        query = query.filter(Order.fulfillment_status == fulfillment_status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)

    total = query.count()
    ordering = Order.created_at.desc() if newest_first else Order.created_at.asc()
    orders = (
        query.order_by(ordering, Order.id.desc() if newest_first else Order.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "orders": [o.to_summary_dict() for o in orders],
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": (total + per_page - 1) // per_page,
    }


# =============================================================================
# MUTATION
# =============================================================================

def append_timeline(order: Order, note: str, *, source: TimelineSource = "admin") -> OrderTimelineEntry:
    """
    Append one audit entry reflecting the order's current statuses.

    Also bumps updated_at so the order row itself is rewritten and the
    version check covers the append.
    """
    now = utcnow()
    entry = OrderTimelineEntry(
        status=order.fulfillment_status,
        payment_status=order.payment_status,
        source=source,
        note=note or "",
        changed_at=now,
    )
    order.timeline.append(entry)
    order.updated_at = now
    return entry


def create_order(
    *,
    items: list[ItemInput],
    shipping: ShippingInput,
    total_amount_cents: int,
    payment_method: str = "pesapal",
    order_number: str | None = None,
) -> Order:
    """
    Create an order in pending/pending with its first timeline entry.

    WHY order_number is optional: the storefront may pre-allocate one before
    redirecting to checkout; otherwise one is generated.
    """
    if order_number is not None:
        order_number = order_number.strip()
        if not order_number:
            raise ValidationError("order_number must not be blank")
        if db.session.query(Order.id).filter_by(order_number=order_number).first():
            raise ValidationError(f"Order number {order_number} already exists")

    order = Order(
        order_number=order_number or generate_order_number(),
        ship_full_name=shipping.full_name,
        ship_email=shipping.email,
        ship_phone=shipping.phone,
        ship_address=shipping.address,
        ship_city=shipping.city,
        ship_region=shipping.region,
        ship_delivery_location=shipping.delivery_location,
        total_amount_cents=total_amount_cents,
        payment_method=payment_method or "pesapal",
        fulfillment_status=FULFILLMENT_PENDING,
        payment_status=PAYMENT_PENDING,
    )
    for position, item in enumerate(items):
        order.items.append(OrderItem(
            position=position,
            product_ref=item.product_ref,
            name=item.name,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
        ))

    db.session.add(order)
    append_timeline(order, "Order created", source="checkout")
    db.session.commit()

    notification_service.notify_order_placed(order)
    return order


def add_order_note(reference, note: str) -> Order:
    """Append a free-text note to the timeline without changing any status."""
    note = (note or "").strip() if isinstance(note, str) else ""
    if not note:
        raise ValidationError("Note is required and must be a non-empty string")

    def _op():
        order = get_order(reference, for_update=True)
        append_timeline(order, note, source="admin")
        db.session.commit()
        return order

    return run_with_retry(_op)


def delete_order(reference) -> str:
    """
    Permanently remove an unpaid order.

    Raises:
        OrderNotFound: no such order
        OrderDeletionForbidden: payment_status is paid
    """
    def _op():
        order = get_order(reference, for_update=True)
        if order.payment_status == PAYMENT_PAID:
            raise OrderDeletionForbidden(order.order_number)
        order_number = order.order_number
        db.session.delete(order)
        db.session.commit()
        return order_number

    return run_with_retry(_op)


def bulk_delete_orders(references: list) -> dict:
    """Delete many orders; each reference succeeds or fails on its own."""
    results = []
    for reference in references:
        try:
            order_number = delete_order(reference)
            results.append({"order_id": reference, "order_number": order_number, "success": True})
        except OrderError as exc:
            db.session.rollback()
            results.append({"order_id": reference, "success": False, "error": str(exc), "code": exc.code})

    deleted = sum(1 for r in results if r["success"])
    return {
        "deleted_count": deleted,
        "failed_count": len(results) - deleted,
        "results": results,
    }
