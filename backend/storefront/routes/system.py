# backend/storefront/routes/system.py
"""
System health endpoint.

Reports database connectivity and whether the payment gateway has
credentials, for deployment debugging.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import Order
from ..services.pesapal_gateway import get_gateway
from storefront.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and that the orders table is readable.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        order_count = db.session.query(Order).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_gateway_health() -> dict:
    """
    Configuration-only check: no outbound call is made to the gateway.
    Missing credentials degrade the service (orders work, payments do not).
    """
    gateway = get_gateway()
    details = {
        "base_url": gateway.base_url,
        "ipn_registered": bool(gateway.ipn_id),
        "callback_url_configured": bool(gateway.callback_url),
    }
    if not gateway.is_configured:
        return {
            "status": "degraded",
            "warning": "PesaPal credentials not configured",
            "details": details,
        }
    return {"status": "healthy", "details": details}


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: Healthy or degraded (degraded is still operational)
    - 503: Database unavailable
    """
    start_time = time.time()

    database_health = check_database_health()
    gateway_health = check_gateway_health()

    all_checks = [database_health, gateway_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "payment_gateway": gateway_health,
        }
    }

    return response, http_status
