import re

import pytest

from storefront.services import fulfillment_service as fs
from storefront.services import notification_service
from storefront.services.order_service import OrderNotFound, get_order
from storefront.validation import ValidationError

from conftest import FailingDispatcher


TRACKING_RE = re.compile(r"^TRK-\d+-[A-Z0-9]{6}$")


def _snapshot(order_id):
    order = get_order(order_id)
    return order.fulfillment_status, order.payment_status, len(order.timeline)


def test_process_paid_order(make_order, dispatcher):
    order = make_order(payment_status="paid")
    _, _, before = _snapshot(order.id)
    dispatcher.events.clear()

    updated = fs.apply_transition(order.order_number, fs.ACTION_PROCESS)

    assert updated.fulfillment_status == "processing"
    assert updated.order_number == order.order_number
    assert len(updated.timeline) == before + 1
    assert updated.timeline[-1].note == "Order is being processed"
    assert updated.timeline[-1].status == "processing"
    assert dispatcher.kinds() == [notification_service.EVENT_ORDER_STATUS_CHANGED]
    assert dispatcher.events[0].title == "Order Processing"


def test_full_pickup_lifecycle(make_order):
    order = make_order(payment_status="paid")
    for action, expected in [
        (fs.ACTION_PROCESS, "processing"),
        (fs.ACTION_FULFILL, "fulfilled"),
        (fs.ACTION_READY, "ready"),
        (fs.ACTION_PICKUP, "picked_up"),
        (fs.ACTION_SHIP, "shipped"),
        (fs.ACTION_DELIVER, "delivered"),
    ]:
        assert fs.apply_transition(order.id, action).fulfillment_status == expected

    # created + six transitions
    assert len(get_order(order.id).timeline) == 7


def test_ship_generates_tracking_number(make_order):
    order = make_order(payment_status="paid", fulfillment_status="fulfilled")

    updated = fs.apply_transition(order.id, fs.ACTION_SHIP)

    assert updated.fulfillment_status == "shipped"
    assert TRACKING_RE.match(updated.tracking_number)


def test_ship_keeps_supplied_tracking_number(make_order):
    order = make_order(payment_status="paid", fulfillment_status="processing")

    updated = fs.apply_transition(order.id, fs.ACTION_SHIP, tracking_number=" G4S-99812 ", note="Sent via G4S")

    assert updated.tracking_number == "G4S-99812"
    assert updated.timeline[-1].note == "Sent via G4S"


@pytest.mark.parametrize("kwargs", [
    {"note": 42},
    {"tracking_number": 12345},
    {"tracking_number": "T" * 65},
])
def test_ship_rejects_bad_text_fields(make_order, kwargs):
    order = make_order(payment_status="paid", fulfillment_status="processing")

    with pytest.raises(ValidationError):
        fs.apply_transition(order.id, fs.ACTION_SHIP, **kwargs)
    assert get_order(order.id).fulfillment_status == "processing"


@pytest.mark.parametrize("kwargs", [
    {"note": ["hello"]},
    {"tracking_number": 7},
    {"status": ["shipped"]},
])
def test_update_status_rejects_non_string_fields(make_order, kwargs):
    order = make_order(payment_status="paid")

    with pytest.raises(ValidationError):
        fs.update_order_status(order.id, **kwargs)


def test_tracking_number_only_for_ship(make_order):
    order = make_order(payment_status="paid")
    with pytest.raises(ValidationError):
        fs.apply_transition(order.id, fs.ACTION_PROCESS, tracking_number="X-1")


@pytest.mark.parametrize("terminal", ["delivered", "cancelled"])
@pytest.mark.parametrize("action", sorted(fs.VALID_ACTIONS))
def test_terminal_orders_never_change(make_order, dispatcher, terminal, action):
    order = make_order(payment_status="paid", fulfillment_status=terminal)
    before = _snapshot(order.id)
    dispatcher.events.clear()

    with pytest.raises(fs.InvalidTransition) as exc_info:
        fs.apply_transition(order.id, action)

    assert isinstance(exc_info.value, fs.AlreadyTerminal)
    assert _snapshot(order.id) == before
    assert dispatcher.events == []


@pytest.mark.parametrize("action", sorted(fs.VALID_ACTIONS - {fs.ACTION_CANCEL}))
@pytest.mark.parametrize("payment_status", ["pending", "processing", "failed", "refunded"])
def test_payment_gate(make_order, action, payment_status):
    from_state = next(iter(sorted(fs.TRANSITIONS[action].from_states)))
    order = make_order(payment_status=payment_status, fulfillment_status=from_state)
    before = _snapshot(order.id)

    with pytest.raises(fs.PaymentNotConfirmed):
        fs.apply_transition(order.id, action)

    assert _snapshot(order.id) == before


def test_cancel_does_not_require_payment(make_order, dispatcher):
    order = make_order(payment_status="pending")
    dispatcher.events.clear()

    updated = fs.apply_transition(order.id, fs.ACTION_CANCEL, note="Customer changed their mind")

    assert updated.fulfillment_status == "cancelled"
    assert updated.timeline[-1].note == "Customer changed their mind"
    assert dispatcher.events[0].priority == "high"


def test_wrong_state_is_rejected(make_order):
    order = make_order(payment_status="paid", fulfillment_status="pending")
    before = _snapshot(order.id)

    with pytest.raises(fs.InvalidTransition) as exc_info:
        fs.apply_transition(order.id, fs.ACTION_DELIVER)

    assert not isinstance(exc_info.value, fs.AlreadyTerminal)
    assert exc_info.value.expected == ["shipped"]
    assert _snapshot(order.id) == before


def test_unknown_action(make_order):
    order = make_order(payment_status="paid")
    with pytest.raises(ValidationError):
        fs.apply_transition(order.id, "teleport")


def test_unknown_order(app):
    with pytest.raises(OrderNotFound):
        fs.apply_transition("ORD-MISSING", fs.ACTION_CANCEL)


def test_notification_failure_does_not_block_transition(app, make_order):
    order = make_order(payment_status="paid")
    failing = FailingDispatcher()
    app.extensions[notification_service.EXTENSION_KEY] = failing

    updated = fs.apply_transition(order.id, fs.ACTION_PROCESS)

    assert failing.attempts == 1
    assert updated.fulfillment_status == "processing"
    assert get_order(order.id).fulfillment_status == "processing"


# =============================================================================
# ADMIN OVERRIDE
# =============================================================================

def test_update_order_status_override(make_order, dispatcher):
    order = make_order(payment_status="pending")
    _, _, before = _snapshot(order.id)
    dispatcher.events.clear()

    updated = fs.update_order_status(order.id, status="shipped", payment_status="paid")

    assert updated.fulfillment_status == "shipped"
    assert updated.payment_status == "paid"
    assert updated.paid_at is not None
    assert TRACKING_RE.match(updated.tracking_number)
    assert len(updated.timeline) == before + 1
    assert updated.timeline[-1].note == "Status updated to shipped"
    assert dispatcher.kinds() == [notification_service.EVENT_ORDER_STATUS_CHANGED]


def test_update_order_status_note_only(make_order, dispatcher):
    order = make_order()
    dispatcher.events.clear()

    updated = fs.update_order_status(order.id, note="Called customer")

    assert updated.fulfillment_status == "pending"
    assert updated.timeline[-1].note == "Called customer"
    assert dispatcher.events == []


def test_update_order_status_respects_terminal_guard(make_order):
    order = make_order(payment_status="paid", fulfillment_status="delivered")

    with pytest.raises(fs.AlreadyTerminal):
        fs.update_order_status(order.id, status="processing")

    # Payment corrections are still allowed on terminal orders
    updated = fs.update_order_status(order.id, payment_status="refunded")
    assert updated.payment_status == "refunded"
    assert updated.fulfillment_status == "delivered"


def test_update_order_status_validation(make_order):
    order = make_order()
    with pytest.raises(ValidationError):
        fs.update_order_status(order.id)
    with pytest.raises(ValidationError):
        fs.update_order_status(order.id, status="lost")
    with pytest.raises(ValidationError):
        fs.update_order_status(order.id, payment_status="maybe")


def test_bulk_update_status(make_order):
    first = make_order()
    done = make_order(payment_status="paid", fulfillment_status="delivered")

    result = fs.bulk_update_status(
        [first.id, done.order_number, "ORD-MISSING"],
        {"status": "processing", "note": "Batch release"},
    )

    assert result["updated_count"] == 1
    assert result["failed_count"] == 2
    assert result["results"][0]["status"] == "processing"
    assert result["results"][1]["code"] == "already_terminal"
    assert result["results"][2]["code"] == "order_not_found"


def test_bulk_update_status_rejects_unknown_fields(make_order):
    order = make_order()
    with pytest.raises(ValidationError):
        fs.bulk_update_status([order.id], {"total_amount_cents": 1})
    with pytest.raises(ValidationError):
        fs.bulk_update_status([], {"status": "processing"})
