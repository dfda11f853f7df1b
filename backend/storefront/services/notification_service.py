# Overview: Customer notification contract for order events; delivery itself is an external collaborator.

"""
Order Notification Dispatcher

The state machines never talk to email/SMS providers directly. They build a
NotificationEvent and hand it to the dispatcher registered on
app.extensions["order_notifier"]. Delivery is fire-and-forget: dispatch()
catches and logs every failure so a broken provider can never fail or roll
back the order transition that triggered it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from flask import current_app


EVENT_ORDER_PLACED = "order_placed"
EVENT_PAYMENT_CONFIRMED = "payment_confirmed"
EVENT_ORDER_STATUS_CHANGED = "order_status_changed"

EXTENSION_KEY = "order_notifier"


# Single lookup table for every trigger: (title, message template).
# Templates may reference {order_number}, {tracking_number}, {amount}.
STATUS_MESSAGES = {
    "pending": ("Order Received", "Your order {order_number} has been received."),
    "processing": ("Order Processing", "Your order is now being processed and prepared for shipment."),
    "fulfilled": ("Order Fulfilled", "Your order has been fulfilled and is ready for shipping."),
    "ready": ("Order Ready", "Your order is ready for pickup or shipping."),
    "picked_up": ("Order Picked Up", "Your order has been picked up."),
    "shipped": ("Order Shipped", "Your order has been shipped (Tracking: {tracking_number})."),
    "delivered": ("Order Delivered", "Your order has been delivered successfully!"),
    "cancelled": ("Order Cancelled", "Your order has been cancelled."),
    "paid": ("Payment Confirmed", "Payment of {currency} {amount} for order {order_number} has been confirmed."),
}


@dataclass
class NotificationEvent:
    kind: str
    order_number: str
    email: str | None
    phone: str | None
    title: str
    message: str
    priority: str = "medium"
    data: dict = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    def notify(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationDispatcher:
    """Default dispatcher: records the event in the application log."""

    def notify(self, event: NotificationEvent) -> None:
        current_app.logger.info(
            "Notification %s for order %s: %s",
            event.kind, event.order_number, event.title,
        )


def _format_amount(amount_cents: int) -> str:
    return f"{amount_cents / 100:,.2f}"


def build_event(order, kind: str, status: str) -> NotificationEvent:
    """Build the customer-facing event for an order entering `status`."""
    title, template = STATUS_MESSAGES.get(
        status,
        ("Order Update", "Your order status has been updated to {status}"),
    )
    message = template.format(
        order_number=order.order_number,
        tracking_number=order.tracking_number or "pending",
        amount=_format_amount(order.total_amount_cents),
        currency=current_app.config.get("PESAPAL_CURRENCY", "KES"),
        status=status,
    )
    return NotificationEvent(
        kind=kind,
        order_number=order.order_number,
        email=order.ship_email,
        phone=order.ship_phone,
        title=title,
        message=message,
        priority="high" if status in ("cancelled", "paid") else "medium",
        data={
            "order_id": order.id,
            "order_number": order.order_number,
            "status": status,
            "tracking_number": order.tracking_number,
            "amount_cents": order.total_amount_cents,
        },
    )


def get_dispatcher() -> NotificationDispatcher:
    dispatcher = current_app.extensions.get(EXTENSION_KEY)
    if dispatcher is None:
        dispatcher = LoggingNotificationDispatcher()
        current_app.extensions[EXTENSION_KEY] = dispatcher
    return dispatcher


def dispatch(event: NotificationEvent) -> bool:
    """
    Hand an event to the dispatcher. Never raises.

    Returns False when delivery failed (the failure is logged).
    """
    try:
        get_dispatcher().notify(event)
        return True
    except Exception:
        current_app.logger.exception(
            "Notification %s for order %s failed", event.kind, event.order_number
        )
        return False


def notify_order_placed(order) -> bool:
    return dispatch(build_event(order, EVENT_ORDER_PLACED, "pending"))


def notify_payment_confirmed(order) -> bool:
    return dispatch(build_event(order, EVENT_PAYMENT_CONFIRMED, "paid"))


def notify_status_change(order, new_status: str) -> bool:
    return dispatch(build_event(order, EVENT_ORDER_STATUS_CHANGED, new_status))
