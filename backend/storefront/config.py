# backend/storefront/config.py
from __future__ import annotations
import os


PESAPAL_SANDBOX_URL = "https://cybqa.pesapal.com/pesapalv3"
PESAPAL_PRODUCTION_URL = "https://pay.pesapal.com/v3"


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Bearer token for admin order/payment actions (stand-in for session auth)
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN", "dev-admin-token-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storefront.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment gateway (PesaPal v3)
    PESAPAL_CONSUMER_KEY = os.environ.get("PESAPAL_CONSUMER_KEY")
    PESAPAL_CONSUMER_SECRET = os.environ.get("PESAPAL_CONSUMER_SECRET")
    PESAPAL_TEST_MODE = _env_flag("PESAPAL_TEST_MODE", True)
    PESAPAL_BASE_URL = os.environ.get(
        "PESAPAL_BASE_URL",
        PESAPAL_SANDBOX_URL if PESAPAL_TEST_MODE else PESAPAL_PRODUCTION_URL,
    )
    PESAPAL_CALLBACK_URL = os.environ.get("PESAPAL_CALLBACK_URL")
    PESAPAL_REDIRECT_URL = os.environ.get("PESAPAL_REDIRECT_URL")
    PESAPAL_CANCEL_URL = os.environ.get("PESAPAL_CANCEL_URL")
    PESAPAL_IPN_ID = os.environ.get("PESAPAL_IPN_ID")
    PESAPAL_CURRENCY = os.environ.get("PESAPAL_CURRENCY", "KES")
    PESAPAL_TIMEOUT_SECONDS = float(os.environ.get("PESAPAL_TIMEOUT_SECONDS", "15"))
    PESAPAL_AUTH_ATTEMPTS = int(os.environ.get("PESAPAL_AUTH_ATTEMPTS", "3"))

    # When the callback's status lookup fails, treat the payment as completed.
    # Set to false to leave the order unchanged until a later reconciliation.
    PAYMENT_CALLBACK_ASSUME_COMPLETED = _env_flag("PAYMENT_CALLBACK_ASSUME_COMPLETED", True)

    BULK_REFRESH_MAX_ORDERS = int(os.environ.get("BULK_REFRESH_MAX_ORDERS", "100"))
