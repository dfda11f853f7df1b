from decimal import Decimal

import pytest

from storefront.extensions import db
from storefront.services import notification_service
from storefront.services import reconciliation_service as rs
from storefront.services.order_service import OrderNotFound, get_order
from storefront.services.pesapal_gateway import AmountLimitExceeded, GatewayUnavailable
from storefront.validation import ValidationError

from conftest import FailingDispatcher


def _timeline_len(order_id):
    return len(get_order(order_id).timeline)


# =============================================================================
# reconcile()
# =============================================================================

def test_completed_marks_order_paid_once(make_order, dispatcher):
    order = make_order(tracking_id="TRACK-9")
    before = _timeline_len(order.id)
    dispatcher.events.clear()

    result = rs.reconcile(order.id, "COMPLETED", source="ipn")

    order = get_order(order.id)
    assert result.changed is True
    assert result.previous_status == "pending"
    assert result.new_status == "paid"
    assert result.payment_confirmed is True
    assert order.payment_status == "paid"
    assert order.paid_at is not None
    assert order.payment_completed_at is not None
    assert order.fulfillment_status == "pending"
    assert len(order.timeline) == before + 1
    assert order.timeline[-1].source == "ipn"
    assert dispatcher.kinds() == [notification_service.EVENT_PAYMENT_CONFIRMED]


def test_reconcile_is_idempotent(make_order, dispatcher):
    order = make_order(tracking_id="TRACK-9")
    rs.reconcile(order.id, "Completed", source="ipn")
    after_first = _timeline_len(order.id)
    dispatcher.events.clear()

    second = rs.reconcile(order.id, "Completed", source="refresh")

    order = get_order(order.id)
    assert second.changed is False
    assert second.payment_confirmed is False
    assert order.payment_status == "paid"
    assert len(order.timeline) == after_first
    assert dispatcher.events == []
    assert order.last_payment_check is not None


def test_settled_order_is_not_downgraded(make_order):
    order = make_order(payment_status="paid", tracking_id="TRACK-9")
    before = _timeline_len(order.id)

    result = rs.reconcile(order.id, "FAILED", source="ipn")

    order = get_order(order.id)
    assert result.changed is False
    assert order.payment_status == "paid"
    assert order.transaction_status == "FAILED"
    assert len(order.timeline) == before


def test_unrecognised_status_only_records_transaction_status(make_order):
    order = make_order(payment_status="processing", tracking_id="TRACK-9")
    before = _timeline_len(order.id)

    result = rs.reconcile(order.id, "REVERSED", source="refresh")

    order = get_order(order.id)
    assert result.changed is False
    assert order.payment_status == "processing"
    assert order.transaction_status == "REVERSED"
    assert len(order.timeline) == before


def test_failed_status_stamps_failure_time(make_order, dispatcher):
    order = make_order(payment_status="processing", tracking_id="TRACK-9")
    dispatcher.events.clear()

    result = rs.reconcile(order.id, "Payment Cancelled by user", source="callback")

    order = get_order(order.id)
    assert result.new_status == "failed"
    assert order.payment_failed_at is not None
    assert order.paid_at is None
    assert dispatcher.events == []


def test_notification_failure_does_not_block_payment(app, make_order):
    order = make_order(tracking_id="TRACK-9")
    failing = FailingDispatcher()
    app.extensions[notification_service.EXTENSION_KEY] = failing

    result = rs.reconcile(order.id, "COMPLETED", source="ipn")

    assert failing.attempts == 1
    assert result.new_status == "paid"
    assert get_order(order.id).payment_status == "paid"


def test_reconcile_unknown_order(app):
    with pytest.raises(OrderNotFound):
        rs.reconcile(99999, "COMPLETED", source="ipn")


# =============================================================================
# IPN
# =============================================================================

def test_ipn_completed_scenario(make_order):
    order = make_order(tracking_id="TRACK-9")
    before = _timeline_len(order.id)

    result = rs.handle_ipn({
        "OrderTrackingId": "TRACK-9",
        "OrderNotificationType": "COMPLETED",
        "OrderMerchantReference": order.order_number,
    })

    order = get_order(order.id)
    assert result.new_status == "paid"
    assert order.paid_at is not None
    assert len(order.timeline) == before + 1


def test_ipn_falls_back_to_merchant_reference(make_order):
    order = make_order()

    rs.handle_ipn({
        "OrderTrackingId": "TRACK-NEW",
        "OrderNotificationType": "FAILED",
        "OrderMerchantReference": order.order_number,
    })

    order = get_order(order.id)
    assert order.payment_status == "failed"
    assert order.transaction_tracking_id == "TRACK-NEW"


def test_ipn_update_requeries_gateway(make_order, gateway):
    order = make_order(payment_status="processing", tracking_id="TRACK-9")
    gateway.statuses["TRACK-9"] = "Completed"

    result = rs.handle_ipn({"OrderTrackingId": "TRACK-9", "OrderNotificationType": "IPNCHANGE"})

    assert gateway.status_calls == ["TRACK-9"]
    assert result.new_status == "paid"


def test_ipn_update_without_any_tracking_id(make_order):
    order = make_order()

    with pytest.raises(rs.NoTrackingId):
        rs.handle_ipn({"OrderMerchantReference": order.order_number, "OrderNotificationType": "UPDATE"})


def test_ipn_missing_correlation_fields(app):
    with pytest.raises(rs.MalformedCallback):
        rs.handle_ipn({"OrderNotificationType": "COMPLETED"})


def test_ipn_unknown_order(make_order):
    make_order(tracking_id="TRACK-9")
    with pytest.raises(OrderNotFound):
        rs.handle_ipn({"OrderTrackingId": "NOPE", "OrderNotificationType": "COMPLETED"})


# =============================================================================
# CALLBACK
# =============================================================================

def test_callback_params_prefer_body_over_query():
    tracking_id, reference = rs.extract_callback_params(
        {"OrderTrackingId": "BODY-T", "OrderMerchantReference": "BODY-R"},
        {"pesapal_transaction_tracking_id": "QUERY-T", "orderId": "QUERY-R"},
    )
    assert tracking_id == "BODY-T"
    assert reference == "BODY-R"

    tracking_id, reference = rs.extract_callback_params(
        {}, {"orderTrackingId": "QUERY-T", "merchant_reference": "QUERY-R"}
    )
    assert (tracking_id, reference) == ("QUERY-T", "QUERY-R")


def test_callback_params_ignore_non_object_body():
    query = {"OrderTrackingId": "QUERY-T", "OrderMerchantReference": "QUERY-R"}

    assert rs.extract_callback_params(["OrderTrackingId"], query) == ("QUERY-T", "QUERY-R")
    assert rs.extract_callback_params("OrderTrackingId=BODY-T", query) == ("QUERY-T", "QUERY-R")


def test_callback_with_list_body_is_malformed(app):
    with pytest.raises(rs.MalformedCallback):
        rs.handle_callback([1, 2, 3], None)


def test_callback_uses_gateway_status(make_order, gateway):
    order = make_order(payment_status="processing", tracking_id="TRACK-9")
    gateway.statuses["TRACK-9"] = "PENDING"

    signal, result = rs.handle_callback(
        None, {"OrderTrackingId": "TRACK-9", "OrderMerchantReference": order.order_number}
    )

    assert signal == rs.SIGNAL_PENDING
    assert result.new_status == "pending"


def test_callback_assumes_completed_when_lookup_fails(make_order, gateway):
    order = make_order(payment_status="processing", tracking_id="TRACK-9")
    gateway.lookup_error = "timeout"

    signal, result = rs.handle_callback(
        {"OrderTrackingId": "TRACK-9", "OrderMerchantReference": order.order_number}, None
    )

    assert signal == rs.SIGNAL_SUCCESS
    assert result.lookup_error == "timeout"
    assert get_order(order.id).payment_status == "paid"


def test_callback_leniency_can_be_disabled(app, make_order, gateway):
    app.config["PAYMENT_CALLBACK_ASSUME_COMPLETED"] = False
    order = make_order(payment_status="processing", tracking_id="TRACK-9")
    gateway.lookup_error = "timeout"

    signal, result = rs.handle_callback(
        {"OrderTrackingId": "TRACK-9", "OrderMerchantReference": order.order_number}, None
    )

    assert signal == rs.SIGNAL_PENDING
    assert result.changed is False
    assert get_order(order.id).payment_status == "processing"


def test_callback_missing_fields(app):
    with pytest.raises(rs.MalformedCallback) as exc_info:
        rs.handle_callback({"OrderTrackingId": "TRACK-9"}, {})
    assert exc_info.value.missing == ["merchant reference"]


# =============================================================================
# REFRESH
# =============================================================================

def test_refresh_requires_tracking_id(make_order):
    order = make_order()
    with pytest.raises(rs.NoTrackingId):
        rs.refresh_payment(order.order_number)


def test_refresh_lookup_failure_changes_nothing(make_order, gateway):
    order = make_order(payment_status="processing", tracking_id="TRACK-9")
    gateway.lookup_error = "PesaPal servers are unreachable"

    result = rs.refresh_payment(order.id)

    assert result.changed is False
    assert result.lookup_error == "PesaPal servers are unreachable"
    assert get_order(order.id).payment_status == "processing"


def test_bulk_refresh_isolates_failures(make_order, gateway):
    first = make_order(payment_status="processing", tracking_id="T-1")
    second = make_order()
    third = make_order(payment_status="processing", tracking_id="T-3")
    gateway.statuses.update({"T-1": "COMPLETED", "T-3": "FAILED"})

    summary = rs.bulk_refresh([first.id, second.id, third.id])

    results = summary["results"]
    assert len(results) == 3
    assert summary["success_count"] == 2
    assert summary["error_count"] == 1
    assert results[0]["success"] is True
    assert results[0]["old_status"] == "processing"
    assert results[0]["new_status"] == "paid"
    assert results[1]["success"] is False
    assert "tracking id" in results[1]["error"].lower()
    assert results[2]["success"] is True
    assert results[2]["new_status"] == "failed"


def test_bulk_refresh_reports_missing_orders(make_order, gateway):
    order = make_order(payment_status="processing", tracking_id="T-1")
    gateway.statuses["T-1"] = "COMPLETED"

    summary = rs.bulk_refresh(["ORD-DOES-NOT-EXIST", order.order_number])

    assert [r["success"] for r in summary["results"]] == [False, True]
    assert summary["results"][0]["code"] == "order_not_found"


def test_bulk_refresh_validates_input(app):
    with pytest.raises(ValidationError):
        rs.bulk_refresh([])
    with pytest.raises(ValidationError):
        rs.bulk_refresh("1,2,3")

    app.config["BULK_REFRESH_MAX_ORDERS"] = 2
    with pytest.raises(ValidationError):
        rs.bulk_refresh([1, 2, 3])


def test_refresh_unpaid_orders_skips_settled_and_untracked(make_order, gateway):
    pending = make_order(payment_status="processing", tracking_id="T-1")
    make_order(payment_status="paid", tracking_id="T-2")
    make_order()
    make_order(payment_status="pending", fulfillment_status="cancelled", tracking_id="T-4")
    gateway.statuses["T-1"] = "COMPLETED"

    summary = rs.refresh_unpaid_orders(limit=10)

    assert summary["total_processed"] == 1
    assert summary["results"][0]["order_id"] == pending.id
    assert gateway.status_calls == ["T-1"]


def test_get_payment_status_refreshes_unpaid(make_order, gateway):
    order = make_order(payment_status="processing", tracking_id="T-1")
    gateway.statuses["T-1"] = "COMPLETED"

    status = rs.get_payment_status(order.order_number)

    assert status["status_refreshed"] is True
    assert status["payment_status"] == "paid"
    assert status["payment_completed_at"].endswith("Z")


def test_get_payment_status_skips_paid_orders(make_order, gateway):
    order = make_order(payment_status="paid", tracking_id="T-1")

    status = rs.get_payment_status(order.id)

    assert status["status_refreshed"] is False
    assert gateway.status_calls == []


# =============================================================================
# PAYMENT INITIATION
# =============================================================================

def test_initiate_payment_marks_processing(make_order, gateway):
    order = make_order(total_amount_cents=250050)
    before = _timeline_len(order.id)
    gateway.next_tracking_id = "TRACK-42"

    initiation = rs.initiate_payment(order.order_number, phone="0712 345 678")

    order = get_order(order.id)
    call = gateway.initiate_calls[0]
    assert initiation.tracking_id == "TRACK-42"
    assert call["amount"] == Decimal("2500.50")
    assert call["phone"] == "+254712345678"
    assert call["email"] == "wanjiru@example.com"
    assert order.payment_status == "processing"
    assert order.transaction_tracking_id == "TRACK-42"
    assert order.payment_initiated_at is not None
    assert len(order.timeline) == before + 1


@pytest.mark.parametrize("payment_status, fulfillment_status", [
    ("paid", "pending"),
    ("processing", "pending"),
    ("pending", "cancelled"),
])
def test_initiate_payment_refused(make_order, gateway, payment_status, fulfillment_status):
    order = make_order(payment_status=payment_status, fulfillment_status=fulfillment_status)

    with pytest.raises(rs.PaymentNotAllowed):
        rs.initiate_payment(order.id, phone="0712345678")
    assert gateway.initiate_calls == []


def test_initiate_payment_refused_for_refunded_order(make_order, gateway):
    order = make_order(payment_status="refunded", fulfillment_status="delivered")

    with pytest.raises(rs.PaymentNotAllowed):
        rs.initiate_payment(order.id, phone="0712345678")
    assert gateway.initiate_calls == []


def test_ipn_during_initiation_keeps_order_paid(make_order, gateway, dispatcher):
    order = make_order(payment_status="failed", tracking_id="T-OLD")
    order_id = order.id
    gateway.next_tracking_id = "TRACK-NEW"
    gateway.during_initiate = lambda: rs.handle_ipn({
        "OrderTrackingId": "T-OLD",
        "OrderNotificationType": "COMPLETED",
    })

    with pytest.raises(rs.PaymentNotAllowed):
        rs.initiate_payment(order_id, phone="0712345678")

    order = get_order(order_id)
    assert len(gateway.initiate_calls) == 1
    assert order.payment_status == "paid"
    assert order.transaction_tracking_id == "T-OLD"
    assert not any(entry.note.startswith("Payment initiated") for entry in order.timeline)
    assert notification_service.EVENT_PAYMENT_CONFIRMED in dispatcher.kinds()


def test_second_checkout_during_initiation_is_refused(make_order, gateway):
    order = make_order(payment_status="pending")
    order_id = order.id

    def concurrent_checkout():
        locked = get_order(order_id)
        locked.payment_status = "processing"
        locked.transaction_tracking_id = "TRACK-OTHER"
        db.session.commit()

    gateway.during_initiate = concurrent_checkout

    with pytest.raises(rs.PaymentNotAllowed):
        rs.initiate_payment(order_id, phone="0712345678")

    order = get_order(order_id)
    assert order.payment_status == "processing"
    assert order.transaction_tracking_id == "TRACK-OTHER"


def test_initiate_payment_records_gateway_failure(make_order, gateway):
    order = make_order()
    gateway.initiate_error = GatewayUnavailable("PesaPal is unreachable")

    with pytest.raises(GatewayUnavailable):
        rs.initiate_payment(order.id, phone="0712345678")

    order = get_order(order.id)
    assert order.payment_status == "failed"
    assert order.payment_error == "PesaPal is unreachable"
    assert order.payment_failed_at is not None


def test_initiate_payment_amount_limit(make_order, gateway):
    order = make_order()
    gateway.initiate_error = AmountLimitExceeded(Decimal("2500.00"))

    with pytest.raises(AmountLimitExceeded):
        rs.initiate_payment(order.id, phone="0712345678")
    assert get_order(order.id).payment_status == "failed"


def test_failed_payment_can_be_retried(make_order, gateway):
    order = make_order(payment_status="failed")

    rs.initiate_payment(order.id, phone="+254712345678")

    assert get_order(order.id).payment_status == "processing"
