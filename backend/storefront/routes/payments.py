# Overview: Flask API routes for PesaPal payments; checkout, callback, IPN and status refresh.

# backend/storefront/routes/payments.py
"""
Payment API Routes

- POST     /api/payments/pesapal              - Start hosted checkout for an order
- GET/POST /api/payments/callback             - Browser redirect after checkout (HTML)
- GET/POST /api/payments/pesapal/ipn          - Gateway IPN webhook (JSON ack)
- GET      /api/payments/status/:ref          - Payment status, refreshed when unpaid
- POST     /api/payments/refresh-status/bulk  - Admin: re-query many orders

The callback and IPN endpoints are called by the browser popup and by PesaPal
respectively, so they are public. The callback always re-queries the gateway.
The IPN takes COMPLETED/FAILED/CANCELLED notification types as the outcome and
re-queries the gateway for any other type. Either way the change is applied
through reconciliation, which never downgrades a settled order.
"""

import json

from flask import Blueprint, Response, current_app, jsonify, request

from ..decorators import require_admin
from ..services import reconciliation_service
from ..services.order_service import OrderError, OrderNotFound
from ..services.pesapal_gateway import (
    AmountLimitExceeded,
    GatewayAuthFailed,
    GatewayError,
    GatewayUnavailable,
)
from ..services.reconciliation_service import (
    SIGNAL_FAILED,
    MalformedCallback,
    NoTrackingId,
    PaymentNotAllowed,
)
from ..validation import ValidationError, require_json_object


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _error(exc: Exception, status: int):
    return jsonify({"error": str(exc), "code": getattr(exc, "code", "error")}), status


def _popup_response(signal: str, status: int) -> Response:
    """Tiny page that posts the outcome to the checkout opener and closes itself."""
    body = (
        "<!DOCTYPE html><html><body><script>"
        f"window.opener && window.opener.postMessage({json.dumps(signal)}, \"*\");"
        "window.close();"
        "</script></body></html>"
    )
    return Response(body, status=status, mimetype="text/html")


def _ipn_ack(payload: dict, status: str, http_status: int, error: str | None = None):
    ack = {
        "Status": status,
        "OrderNotificationType": "IPNRES" if http_status == 200 else "IPNERR",
        "OrderTrackingId": payload.get("OrderTrackingId"),
    }
    if error:
        ack["Error"] = error
    return jsonify(ack), http_status


# =============================================================================
# CHECKOUT
# =============================================================================

@payments_bp.post("/pesapal")
def initiate_pesapal_payment():
    """
    Start a PesaPal payment for an existing order.

    Request body:
    {
        "order_id": 12 | "ORD-...",
        "phone_number": "0712345678",
        "email": "buyer@example.com",   (optional, defaults to shipping email)
        "description": "Order Payment"  (optional)
    }

    Returns:
        200: {"payment_url", "tracking_id", "order_id"}
        400: Invalid input, or amount above the account limit
        404: Order not found
        409: Order already paid, payment in flight, or cancelled
        502: Gateway rejected the request
        503: Gateway unreachable
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        reference = data.get("order_id")
        if reference is None or str(reference).strip() == "":
            raise ValidationError("order_id is required")

        initiation = reconciliation_service.initiate_payment(
            reference,
            phone=data.get("phone_number") or data.get("phone"),
            email=data.get("email"),
            description=data.get("description") or "Order Payment",
        )
        return jsonify({
            "payment_url": initiation.payment_url,
            "tracking_id": initiation.tracking_id,
            "order_id": reference,
        }), 200

    except ValidationError as e:
        return _error(e, 400)
    except OrderNotFound as e:
        return _error(e, 404)
    except PaymentNotAllowed as e:
        return _error(e, 409)
    except AmountLimitExceeded as e:
        return jsonify({
            "error": "Payment amount exceeds your account limit. Contact support or try a smaller amount.",
            "code": e.code,
        }), 400
    except GatewayUnavailable as e:
        return jsonify({
            "error": "Payment service is temporarily unavailable. Please try again later.",
            "code": e.code,
        }), 503
    except GatewayAuthFailed as e:
        current_app.logger.error("PesaPal authentication failed: %s", e)
        return jsonify({"error": "Payment service configuration error", "code": e.code}), 502
    except GatewayError as e:
        return _error(e, 502)
    except Exception:
        current_app.logger.exception("Failed to initiate PesaPal payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# GATEWAY NOTIFICATIONS
# =============================================================================

@payments_bp.route("/callback", methods=["GET", "POST"])
def payment_callback():
    """
    Browser redirect after hosted checkout.

    Tracking id and merchant reference are read from the form/JSON body first,
    then the query string. The response is an HTML page that posts one of
    pesapal-payment-success / -pending / -failed to window.opener.
    """
    body = request.get_json(silent=True) if request.is_json else request.form
    try:
        signal, result = reconciliation_service.handle_callback(body, request.args)
        current_app.logger.info(
            "Payment callback for order %s: %s -> %s",
            result.order_number, result.previous_status, result.new_status,
        )
        return _popup_response(signal, 200)

    except MalformedCallback as e:
        current_app.logger.warning("Malformed payment callback: %s", e)
        return _popup_response(SIGNAL_FAILED, 400)
    except OrderNotFound as e:
        current_app.logger.warning("Payment callback for unknown order: %s", e)
        return _popup_response(SIGNAL_FAILED, 404)
    except Exception:
        current_app.logger.exception("Failed to process payment callback")
        return _popup_response(SIGNAL_FAILED, 500)


@payments_bp.route("/pesapal/ipn", methods=["GET", "POST"])
def pesapal_ipn():
    """
    PesaPal Instant Payment Notification.

    Accepts JSON, form or query parameters (OrderTrackingId,
    OrderMerchantReference, OrderNotificationType) and acknowledges with
    {"Status", "OrderNotificationType": IPNRES|IPNERR, "OrderTrackingId"}.
    """
    payload = {}
    payload.update(request.args.to_dict())
    if request.is_json:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            payload.update(body)
    else:
        payload.update(request.form.to_dict())

    try:
        result = reconciliation_service.handle_ipn(payload)
        current_app.logger.info(
            "IPN for order %s: %s -> %s",
            result.order_number, result.previous_status, result.new_status,
        )
        return _ipn_ack(payload, "success", 200)

    except (MalformedCallback, NoTrackingId) as e:
        current_app.logger.warning("Rejected IPN: %s", e)
        return _ipn_ack(payload, "error", 400, str(e))
    except OrderNotFound as e:
        current_app.logger.warning("IPN for unknown order: %s", e)
        return _ipn_ack(payload, "error", 404, str(e))
    except Exception:
        current_app.logger.exception("Failed to process PesaPal IPN")
        return _ipn_ack(payload, "error", 500, "Internal server error")


# =============================================================================
# STATUS
# =============================================================================

@payments_bp.get("/status/<order_ref>")
def payment_status(order_ref: str):
    try:
        return jsonify(reconciliation_service.get_payment_status(order_ref)), 200
    except OrderNotFound as e:
        return _error(e, 404)
    except Exception:
        current_app.logger.exception("Failed to read payment status for order %s", order_ref)
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/refresh-status/bulk")
@require_admin
def bulk_refresh_payment_status():
    """
    Re-query the gateway for many orders.

    Request body:
    {"order_ids": [1, 2, "ORD-..."]}

    Returns:
        200: {"total_processed", "success_count", "error_count", "results": [...]}
        400: order_ids missing, empty, or above the batch cap
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        return jsonify(reconciliation_service.bulk_refresh(data.get("order_ids"))), 200
    except ValidationError as e:
        return _error(e, 400)
    except OrderError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to bulk refresh payment status")
        return jsonify({"error": "Internal server error"}), 500
