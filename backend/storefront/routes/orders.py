# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/storefront/routes/orders.py
"""
Order API Routes

- POST /api/orders                      - Checkout: create an order (public)
- GET  /api/orders                      - List orders with filters
- GET  /api/orders/:ref                 - Order detail with items and timeline
- PUT  /api/orders/:ref                 - Admin override of status fields
- DELETE /api/orders/:ref               - Delete an unpaid order
- POST /api/orders/:ref/notes           - Append a timeline note
- POST /api/orders/:ref/<action>        - Fulfillment transition
- POST /api/orders/:ref/refresh-payment - Re-query the gateway
- POST /api/orders/bulk/status          - Bulk admin override
- POST /api/orders/bulk/delete          - Bulk delete

:ref is the numeric id or the order number.

SECURITY:
- Everything except checkout requires the admin bearer token
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..services import fulfillment_service, order_service, reconciliation_service
from ..services.fulfillment_service import InvalidTransition, PaymentNotConfirmed
from ..services.order_service import OrderDeletionForbidden, OrderError, OrderNotFound
from ..services.reconciliation_service import NoTrackingId
from ..validation import (
    ValidationError,
    parse_amount_cents,
    parse_items,
    parse_shipping,
    require_json_object,
)


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _error(exc: Exception, status: int):
    return jsonify({"error": str(exc), "code": getattr(exc, "code", "error")}), status


def _order_error_status(exc: OrderError) -> int:
    if isinstance(exc, OrderNotFound):
        return 404
    if isinstance(exc, NoTrackingId):
        return 400
    if isinstance(exc, (InvalidTransition, PaymentNotConfirmed, OrderDeletionForbidden)):
        return 409
    return 400


def _transition_payload(order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.fulfillment_status,
        "payment_status": order.payment_status,
        "tracking_number": order.tracking_number,
    }


# =============================================================================
# CHECKOUT
# =============================================================================

@orders_bp.post("")
def create_order_route():
    """
    Create an order from the checkout flow.

    Request body:
    {
        "order_number": "ORD-...",   (optional, generated when absent)
        "items": [{"product_ref": "P-1", "name": "Gloves", "quantity": 2, "unit_price_cents": 1500}],
        "shipping_destination": {"full_name", "email", "phone", "address", "city", "region", "delivery_location"},
        "total_amount_cents": 3000,
        "payment_method": "pesapal"   (optional)
    }

    Returns:
        201: Order created in pending/pending
        400: Invalid input
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        order = order_service.create_order(
            items=parse_items(data.get("items")),
            shipping=parse_shipping(data.get("shipping_destination")),
            total_amount_cents=parse_amount_cents(data.get("total_amount_cents")),
            payment_method=data.get("payment_method") or "pesapal",
            order_number=data.get("order_number"),
        )

        return jsonify({
            "message": "Order created successfully",
            "order": order.to_dict(),
        }), 201

    except ValidationError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@orders_bp.get("")
@require_admin
def list_orders_route():
    """
    Query params:
    - status: fulfillment status filter
    - payment_status: payment status filter
    - page, per_page: pagination (per_page max 100)
    - sort: "desc" (default) or "asc" by creation time
    """
    try:
        result = order_service.list_orders(
            fulfillment_status=request.args.get("status") or None,
            payment_status=request.args.get("payment_status") or None,
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
            newest_first=request.args.get("sort", "desc").lower() != "asc",
        )
        return jsonify(result), 200

    except ValidationError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<order_ref>")
@require_admin
def get_order_route(order_ref: str):
    try:
        order = order_service.get_order(order_ref)
        return jsonify({"order": order.to_dict()}), 200
    except OrderNotFound as e:
        return _error(e, 404)


# =============================================================================
# FULFILLMENT
# =============================================================================

@orders_bp.post("/<order_ref>/<any(process, fulfill, ready, pickup, ship, deliver, cancel):action>")
@require_admin
def transition_order_route(order_ref: str, action: str):
    """
    Apply one fulfillment transition.

    Request body (optional):
    {
        "note": "Packed by warehouse B",
        "tracking_number": "KE123456"   (ship only; generated when absent)
    }

    Returns:
        200: Updated order id/number/status
        400: Invalid input
        404: Order not found
        409: Transition not allowed (wrong state, terminal, or unpaid)
    """
    try:
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        order = fulfillment_service.apply_transition(
            order_ref,
            action,
            note=data.get("note"),
            tracking_number=data.get("tracking_number") if action == "ship" else None,
        )
        return jsonify({
            "message": f"Order {order.order_number} is now {order.fulfillment_status}",
            "order": _transition_payload(order),
        }), 200

    except ValidationError as e:
        return _error(e, 400)
    except OrderError as e:
        return _error(e, _order_error_status(e))
    except Exception:
        current_app.logger.exception("Failed to %s order %s", action, order_ref)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<order_ref>")
@require_admin
def update_order_route(order_ref: str):
    """
    Request body (all optional, at least one required):
    {"status": "...", "payment_status": "...", "tracking_number": "...", "note": "..."}
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        order = fulfillment_service.update_order_status(
            order_ref,
            status=data.get("status"),
            payment_status=data.get("payment_status"),
            tracking_number=data.get("tracking_number"),
            note=data.get("note"),
        )
        return jsonify({"message": "Order status updated", "order": order.to_dict()}), 200

    except ValidationError as e:
        return _error(e, 400)
    except OrderError as e:
        return _error(e, _order_error_status(e))
    except Exception:
        current_app.logger.exception("Failed to update order %s", order_ref)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<order_ref>/notes")
@require_admin
def add_order_note_route(order_ref: str):
    try:
        data = require_json_object(request.get_json(silent=True))
        order = order_service.add_order_note(order_ref, data.get("note"))
        return jsonify({
            "message": "Note added successfully",
            "order": {
                "id": order.id,
                "order_number": order.order_number,
                "timeline": [entry.to_dict() for entry in order.timeline],
            },
        }), 200

    except ValidationError as e:
        return _error(e, 400)
    except OrderError as e:
        return _error(e, _order_error_status(e))
    except Exception:
        current_app.logger.exception("Failed to add note to order %s", order_ref)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<order_ref>")
@require_admin
def delete_order_route(order_ref: str):
    """
    Returns:
        200: Deleted
        404: Order not found
        409: Order is paid (cancel it instead)
    """
    try:
        order_number = order_service.delete_order(order_ref)
        return jsonify({"message": f"Order {order_number} deleted"}), 200
    except OrderError as e:
        return _error(e, _order_error_status(e))
    except Exception:
        current_app.logger.exception("Failed to delete order %s", order_ref)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT REFRESH
# =============================================================================

@orders_bp.post("/<order_ref>/refresh-payment")
@require_admin
def refresh_payment_route(order_ref: str):
    """
    Re-query the gateway and reconcile this order's payment status.

    Returns:
        200: {"result": {order_id, order_number, previous_status, new_status, changed, ...}}
        400: Order has no tracking id
        404: Order not found
    """
    try:
        result = reconciliation_service.refresh_payment(order_ref)
        return jsonify({
            "message": "Payment status refreshed successfully",
            "result": result.to_dict(),
        }), 200
    except OrderError as e:
        return _error(e, _order_error_status(e))
    except Exception:
        current_app.logger.exception("Failed to refresh payment for order %s", order_ref)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# BULK
# =============================================================================

@orders_bp.post("/bulk/status")
@require_admin
def bulk_update_status_route():
    """
    Request body:
    {"order_ids": [1, "ORD-..."], "updates": {"status": "processing", "note": "..."}}
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        result = fulfillment_service.bulk_update_status(data.get("order_ids"), data.get("updates"))
        return jsonify(result), 200
    except ValidationError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to bulk update orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/bulk/delete")
@require_admin
def bulk_delete_route():
    try:
        data = require_json_object(request.get_json(silent=True))
        order_ids = data.get("order_ids")
        if not isinstance(order_ids, list) or not order_ids:
            raise ValidationError("order_ids must be a non-empty list")
        return jsonify(order_service.bulk_delete_orders(order_ids)), 200
    except ValidationError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to bulk delete orders")
        return jsonify({"error": "Internal server error"}), 500
