# Overview: Fulfillment state machine; one transition table drives every order-status change.

"""
Order Fulfillment Lifecycle

STATE MACHINE:
    pending -> processing -> fulfilled -> ready -> picked_up
    processing | fulfilled | ready | picked_up -> shipped -> delivered
    pending | processing | fulfilled | ready | picked_up -> cancelled

    delivered and cancelled are terminal.

RULES (NON-NEGOTIABLE):
1. Every action is looked up in TRANSITIONS; nothing else changes
   fulfillment_status except update_order_status() (admin override).
2. All actions except cancel require payment_status == "paid".
3. Terminal orders never change fulfillment_status again.
4. Each successful transition appends exactly one timeline entry.
5. Customer notification happens after commit and can never fail the transition.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..models import Order
from ..validation import ValidationError, optional_text
from . import notification_service
from .concurrency import run_with_retry
from .order_service import (
    FULFILLMENT_CANCELLED,
    FULFILLMENT_DELIVERED,
    FULFILLMENT_FULFILLED,
    FULFILLMENT_PENDING,
    FULFILLMENT_PICKED_UP,
    FULFILLMENT_PROCESSING,
    FULFILLMENT_READY,
    FULFILLMENT_SHIPPED,
    FULFILLMENT_STATUSES,
    PAYMENT_PAID,
    PAYMENT_STATUSES,
    TERMINAL_FULFILLMENT_STATUSES,
    OrderError,
    append_timeline,
    generate_tracking_number,
    get_order,
)
from storefront.time_utils import utcnow


# =============================================================================
# TRANSITION TABLE
# =============================================================================

ACTION_PROCESS = "process"
ACTION_FULFILL = "fulfill"
ACTION_READY = "ready"
ACTION_PICKUP = "pickup"
ACTION_SHIP = "ship"
ACTION_DELIVER = "deliver"
ACTION_CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    from_states: frozenset
    to_state: str
    requires_payment: bool = True
    default_note: str = ""


TRANSITIONS = {
    ACTION_PROCESS: Transition(
        frozenset({FULFILLMENT_PENDING}),
        FULFILLMENT_PROCESSING,
        default_note="Order is being processed",
    ),
    ACTION_FULFILL: Transition(
        frozenset({FULFILLMENT_PROCESSING}),
        FULFILLMENT_FULFILLED,
        default_note="Order fulfilled",
    ),
    ACTION_READY: Transition(
        frozenset({FULFILLMENT_FULFILLED}),
        FULFILLMENT_READY,
        default_note="Order ready for pickup or shipping",
    ),
    ACTION_PICKUP: Transition(
        frozenset({FULFILLMENT_READY}),
        FULFILLMENT_PICKED_UP,
        default_note="Order picked up",
    ),
    ACTION_SHIP: Transition(
        frozenset({FULFILLMENT_PROCESSING, FULFILLMENT_FULFILLED, FULFILLMENT_READY, FULFILLMENT_PICKED_UP}),
        FULFILLMENT_SHIPPED,
        default_note="Order shipped",
    ),
    ACTION_DELIVER: Transition(
        frozenset({FULFILLMENT_SHIPPED}),
        FULFILLMENT_DELIVERED,
        default_note="Order delivered",
    ),
    ACTION_CANCEL: Transition(
        frozenset({
            FULFILLMENT_PENDING,
            FULFILLMENT_PROCESSING,
            FULFILLMENT_FULFILLED,
            FULFILLMENT_READY,
            FULFILLMENT_PICKED_UP,
        }),
        FULFILLMENT_CANCELLED,
        requires_payment=False,
        default_note="Order cancelled",
    ),
}

VALID_ACTIONS = set(TRANSITIONS)


# =============================================================================
# ERRORS
# =============================================================================

class InvalidTransition(OrderError):
    """Current fulfillment status does not allow the requested action."""
    code = "invalid_transition"

    def __init__(self, order_number: str, action: str, current: str, expected):
        self.order_number = order_number
        self.action = action
        self.current = current
        self.expected = sorted(expected)
        super().__init__(
            f"Cannot {action} order {order_number}: current status is '{current}', "
            f"must be one of: {', '.join(self.expected)}"
        )


class AlreadyTerminal(InvalidTransition):
    """The order is delivered or cancelled and can no longer change."""
    code = "already_terminal"

    def __init__(self, order_number: str, action: str, current: str):
        self.order_number = order_number
        self.action = action
        self.current = current
        self.expected = []
        OrderError.__init__(
            self,
            f"Cannot {action} order {order_number}: order is already {current}",
        )


class PaymentNotConfirmed(OrderError):
    code = "payment_not_confirmed"

    def __init__(self, order_number: str, action: str, payment_status: str):
        self.order_number = order_number
        self.action = action
        self.payment_status = payment_status
        super().__init__(
            f"Cannot {action} order {order_number}: payment status is '{payment_status}', must be 'paid'"
        )


# =============================================================================
# TRANSITIONS
# =============================================================================

def check_transition(order: Order, action: str) -> Transition:
    """
    Validate an action against the order's current state without mutating it.

    Raises:
        ValidationError: unknown action
        AlreadyTerminal: order is delivered/cancelled
        InvalidTransition: current state not allowed for the action
        PaymentNotConfirmed: action requires a paid order
    """
    transition = TRANSITIONS.get(action)
    if transition is None:
        raise ValidationError(f"Unknown action '{action}'. Must be one of: {', '.join(sorted(VALID_ACTIONS))}")

    current = order.fulfillment_status
    if current in TERMINAL_FULFILLMENT_STATUSES:
        raise AlreadyTerminal(order.order_number, action, current)
    if current not in transition.from_states:
        raise InvalidTransition(order.order_number, action, current, transition.from_states)
    if transition.requires_payment and order.payment_status != PAYMENT_PAID:
        raise PaymentNotConfirmed(order.order_number, action, order.payment_status)
    return transition


def apply_transition(
    reference,
    action: str,
    *,
    note: str | None = None,
    tracking_number: str | None = None,
) -> Order:
    """
    Move an order through one step of the fulfillment lifecycle.

    Args:
        reference: Order id or order number
        action: One of VALID_ACTIONS
        note: Timeline note (defaults to the transition's note)
        tracking_number: Carrier tracking number, only used by "ship"

    Returns:
        The updated order

    Raises:
        OrderNotFound, ValidationError, AlreadyTerminal, InvalidTransition,
        PaymentNotConfirmed
    """
    if tracking_number is not None and action != ACTION_SHIP:
        raise ValidationError("tracking_number is only accepted when shipping")
    note = optional_text(note, "note")
    tracking_number = optional_text(tracking_number, "tracking_number", max_len=64)

    def _op():
        order = get_order(reference, for_update=True)
        transition = check_transition(order, action)

        order.fulfillment_status = transition.to_state
        if action == ACTION_SHIP:
            if tracking_number:
                order.tracking_number = tracking_number
            elif not order.tracking_number:
                order.tracking_number = generate_tracking_number()

        append_timeline(order, note or transition.default_note, source="admin")
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s -> %s (%s)", order.order_number, order.fulfillment_status, action)
    notification_service.notify_status_change(order, order.fulfillment_status)
    return order


def update_order_status(
    reference,
    *,
    status: str | None = None,
    payment_status: str | None = None,
    tracking_number: str | None = None,
    note: str | None = None,
) -> Order:
    """
    Admin override: set fulfillment and/or payment status directly.

    Skips the transition table but keeps the terminal guard for fulfillment
    changes. Setting payment_status to paid stamps paid_at like reconciliation
    does, without the payment-confirmed notification.

    Raises:
        OrderNotFound, ValidationError, AlreadyTerminal
    """
    note = optional_text(note, "note")
    tracking_number = optional_text(tracking_number, "tracking_number", max_len=64)
    if status is None and payment_status is None and not tracking_number and not note:
        raise ValidationError("Provide at least one of status, payment_status, tracking_number, note")
    if status is not None and (not isinstance(status, str) or status not in FULFILLMENT_STATUSES):
        raise ValidationError(f"Unknown fulfillment status '{status}'")
    if payment_status is not None and (not isinstance(payment_status, str) or payment_status not in PAYMENT_STATUSES):
        raise ValidationError(f"Unknown payment status '{payment_status}'")

    def _op():
        order = get_order(reference, for_update=True)
        previous_status = order.fulfillment_status

        if status is not None and status != previous_status:
            if previous_status in TERMINAL_FULFILLMENT_STATUSES:
                raise AlreadyTerminal(order.order_number, f"set status '{status}' on", previous_status)
            order.fulfillment_status = status

        if payment_status is not None and payment_status != order.payment_status:
            order.payment_status = payment_status
            if payment_status == PAYMENT_PAID:
                now = utcnow()
                order.paid_at = order.paid_at or now
                order.payment_completed_at = order.payment_completed_at or now

        if tracking_number:
            order.tracking_number = tracking_number

        if order.fulfillment_status == FULFILLMENT_SHIPPED and not order.tracking_number:
            order.tracking_number = generate_tracking_number()

        default_note = f"Status updated to {order.fulfillment_status}" if status else "Order updated"
        append_timeline(order, note or default_note, source="admin")
        db.session.commit()
        return order, previous_status

    order, previous_status = run_with_retry(_op)
    if order.fulfillment_status != previous_status:
        notification_service.notify_status_change(order, order.fulfillment_status)
    return order


def bulk_update_status(references, updates: dict) -> dict:
    """Apply the same admin override to many orders with per-order results."""
    if not isinstance(references, list) or not references:
        raise ValidationError("order_ids must be a non-empty list")
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("updates object is required")

    allowed = {"status", "payment_status", "tracking_number", "note"}
    unknown = set(updates) - allowed
    if unknown:
        raise ValidationError(f"Invalid update fields: {', '.join(sorted(unknown))}")

    results = []
    for reference in references:
        try:
            order = update_order_status(reference, **updates)
            results.append({
                "order_id": reference,
                "order_number": order.order_number,
                "success": True,
                "status": order.fulfillment_status,
                "payment_status": order.payment_status,
            })
        except (OrderError, ValidationError) as exc:
            db.session.rollback()
            results.append({
                "order_id": reference,
                "success": False,
                "error": str(exc),
                "code": getattr(exc, "code", "order_error"),
            })

    updated = sum(1 for r in results if r["success"])
    return {"updated_count": updated, "failed_count": len(results) - updated, "results": results}

