# Overview: Request decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def require_admin(f):
    """
    Require the admin bearer token for order management endpoints.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Token does not match ADMIN_API_TOKEN
    - ADMIN_API_TOKEN is not configured
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        expected = current_app.config.get("ADMIN_API_TOKEN")

        if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
            current_app.logger.warning(
                "Rejected admin token for %s %s from %s",
                request.method, request.path, request.remote_addr,
            )
            return jsonify({"error": "Invalid or expired token"}), 401

        return f(*args, **kwargs)

    return decorated_function
