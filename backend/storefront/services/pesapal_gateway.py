# Overview: PesaPal v3 payment gateway adapter; every outbound gateway call goes through here.

"""
Payment Gateway Adapter

Three operations are exposed to the rest of the system:
- initiate_payment(): submit an order request, get the hosted checkout URL
- get_transaction_status(): poll the authoritative status (never raises)
- register_ipn(): register the IPN webhook URL, returns the notification id

Auth tokens are internal: requested on demand, cached until shortly before
they expire, and retried with exponential backoff on transient failures.
The adapter holds no order state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation

import httpx
from flask import current_app

from storefront.time_utils import utcnow


AUTH_PATH = "/api/Auth/RequestToken"
SUBMIT_ORDER_PATH = "/api/Transactions/SubmitOrderRequest"
REGISTER_IPN_PATH = "/api/URLSetup/RegisterIPN"
TRANSACTION_STATUS_PATH = "/api/Transactions/GetTransactionStatus"

ERROR_AMOUNT_EXCEEDS_LIMIT = "amount_exceeds_default_limit"
ERROR_INVALID_CREDENTIALS = "invalid_credentials"

STATUS_UNKNOWN = "unknown"

# Tokens are valid for five minutes; refresh a little early.
TOKEN_TTL = timedelta(minutes=4)

EXTENSION_KEY = "payment_gateway"


# =============================================================================
# ERRORS
# =============================================================================

class GatewayError(Exception):
    """Base class for payment gateway failures."""
    code = "gateway_error"


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or 5xx. Retryable by the caller."""
    code = "gateway_unavailable"


class GatewayAuthFailed(GatewayError):
    """Credentials missing or rejected. Not retryable."""
    code = "gateway_auth_failed"


class AmountLimitExceeded(GatewayError):
    """The provider refused the amount for this merchant account."""
    code = "amount_limit_exceeded"

    def __init__(self, amount: Decimal, message: str | None = None):
        self.amount = amount
        super().__init__(message or f"Payment amount {amount} exceeds the account limit")


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class PaymentInitiation:
    payment_url: str
    tracking_id: str


@dataclass(frozen=True)
class TransactionStatus:
    raw_status: str
    method: str = STATUS_UNKNOWN
    amount: Decimal = Decimal("0")
    currency: str = "KES"
    confirmation_code: str | None = None
    error: str | None = None
    raw_response: dict | None = field(default=None, compare=False)

    @property
    def lookup_failed(self) -> bool:
        return self.error is not None


# =============================================================================
# ADAPTER
# =============================================================================

class PesapalGateway:
    def __init__(
        self,
        *,
        base_url: str,
        consumer_key: str | None,
        consumer_secret: str | None,
        callback_url: str | None = None,
        redirect_url: str | None = None,
        cancel_url: str | None = None,
        ipn_id: str | None = None,
        currency: str = "KES",
        timeout: float = 15.0,
        auth_attempts: int = 3,
        backoff_base: float = 1.0,
        transport: httpx.BaseTransport | None = None,
        sleep=time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.callback_url = callback_url
        self.redirect_url = redirect_url
        self.cancel_url = cancel_url
        self.ipn_id = ipn_id
        self.currency = currency
        self.auth_attempts = max(auth_attempts, 1)
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            transport=transport,
        )
        self._token: str | None = None
        self._token_expires_at = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "PesapalGateway":
        return cls(
            base_url=config["PESAPAL_BASE_URL"],
            consumer_key=config.get("PESAPAL_CONSUMER_KEY"),
            consumer_secret=config.get("PESAPAL_CONSUMER_SECRET"),
            callback_url=config.get("PESAPAL_CALLBACK_URL"),
            redirect_url=config.get("PESAPAL_REDIRECT_URL"),
            cancel_url=config.get("PESAPAL_CANCEL_URL"),
            ipn_id=config.get("PESAPAL_IPN_ID"),
            currency=config.get("PESAPAL_CURRENCY", "KES"),
            timeout=config.get("PESAPAL_TIMEOUT_SECONDS", 15.0),
            auth_attempts=config.get("PESAPAL_AUTH_ATTEMPTS", 3),
            **kwargs,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret)

    def close(self) -> None:
        self._client.close()

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    def _request_token(self) -> str:
        response = self._client.post(
            AUTH_PATH,
            json={"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret},
        )
        if response.status_code in (401, 403):
            raise GatewayAuthFailed("PesaPal rejected the consumer key/secret")
        if response.status_code >= 500:
            raise GatewayUnavailable(f"PesaPal auth returned HTTP {response.status_code}")

        data = _json_or_empty(response)
        error = data.get("error")
        if error:
            if isinstance(error, dict) and error.get("code") == ERROR_INVALID_CREDENTIALS:
                raise GatewayAuthFailed("PesaPal rejected the consumer key/secret")
            raise GatewayError(f"PesaPal auth error: {_error_message(error)}")

        token = data.get("token") or data.get("access_token")
        if not token:
            raise GatewayError("Invalid response format from PesaPal auth")
        return token

    def _access_token(self) -> str:
        if self._token and self._token_expires_at and utcnow() < self._token_expires_at:
            return self._token

        if not self.is_configured:
            raise GatewayAuthFailed("PesaPal credentials not configured")

        for attempt in range(self.auth_attempts):
            try:
                token = self._request_token()
            except GatewayAuthFailed:
                raise
            except (GatewayUnavailable, httpx.TransportError) as exc:
                if attempt >= self.auth_attempts - 1:
                    if isinstance(exc, GatewayUnavailable):
                        raise
                    raise GatewayUnavailable(f"PesaPal servers are unreachable: {exc}") from exc
                delay = self.backoff_base * (2 ** attempt)
                current_app.logger.warning(
                    "PesaPal authentication attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt + 1, self.auth_attempts, exc, delay,
                )
                self._sleep(delay)
            else:
                self._token = token
                self._token_expires_at = utcnow() + TOKEN_TTL
                return token

        raise GatewayUnavailable("PesaPal authentication failed")

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self._access_token()}"}

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def register_ipn(self, url: str) -> str:
        """Register the IPN webhook URL and return its notification id."""
        try:
            response = self._client.post(
                REGISTER_IPN_PATH,
                json={"url": url, "ipn_notification_type": "POST"},
                headers=self._auth_headers(),
            )
        except httpx.TransportError as exc:
            raise GatewayUnavailable(f"IPN registration failed: {exc}") from exc

        _raise_for_status(response)
        data = _json_or_empty(response)
        ipn_id = data.get("ipn_id")
        if not ipn_id:
            raise GatewayError("Invalid IPN registration response")
        return ipn_id

    def _notification_id(self) -> str | None:
        if self.ipn_id:
            return self.ipn_id
        if not self.callback_url:
            return None
        try:
            self.ipn_id = self.register_ipn(self.callback_url)
        except GatewayError as exc:
            current_app.logger.warning("IPN registration failed, continuing without it: %s", exc)
            return None
        return self.ipn_id

    def initiate_payment(
        self,
        order_id: str,
        amount: Decimal,
        phone: str,
        email: str,
        description: str = "Order Payment",
    ) -> PaymentInitiation:
        """
        Submit an order request and return the hosted checkout URL.

        Raises:
            GatewayUnavailable: network failure, timeout or 5xx
            GatewayAuthFailed: credentials missing or rejected
            AmountLimitExceeded: provider refused the amount
            GatewayError: any other provider-side rejection
        """
        headers = self._auth_headers()
        payload = {
            "id": order_id,
            "currency": self.currency,
            "amount": float(amount),
            "description": description[:100],
            "callback_url": self.callback_url,
            "redirect_url": self.redirect_url,
            "cancellation_url": self.cancel_url,
            "billing_address": {
                "email_address": email,
                "phone_number": phone,
                "country_code": "KE",
            },
        }
        notification_id = self._notification_id()
        if notification_id:
            payload["notification_id"] = notification_id

        try:
            response = self._client.post(SUBMIT_ORDER_PATH, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise GatewayUnavailable(f"PesaPal is unreachable: {exc}") from exc

        data = _json_or_empty(response)
        error = data.get("error")
        if isinstance(error, dict) and error.get("code") == ERROR_AMOUNT_EXCEEDS_LIMIT:
            raise AmountLimitExceeded(amount)
        _raise_for_status(response)
        if error:
            raise GatewayError(f"PesaPal error: {_error_message(error)}")

        payment_url = data.get("redirect_url")
        tracking_id = data.get("order_tracking_id")
        if not payment_url or not tracking_id:
            raise GatewayError("PesaPal did not return a payment URL")

        return PaymentInitiation(payment_url=payment_url, tracking_id=tracking_id)

    def get_transaction_status(self, tracking_id: str) -> TransactionStatus:
        """
        Fetch the authoritative status for a tracking id.

        Never raises: any failure is reported as raw_status "unknown" with
        error set, which reconciliation treats as "no change".
        """
        try:
            response = self._client.get(
                TRANSACTION_STATUS_PATH,
                params={"orderTrackingId": tracking_id},
                headers=self._auth_headers(),
            )
            _raise_for_status(response)
            data = _json_or_empty(response)
        except (GatewayError, httpx.HTTPError) as exc:
            current_app.logger.warning("Transaction status lookup failed for %s: %s", tracking_id, exc)
            return TransactionStatus(raw_status=STATUS_UNKNOWN, currency=self.currency, error=str(exc))

        try:
            amount = Decimal(str(data.get("amount") or 0))
        except InvalidOperation:
            current_app.logger.warning(
                "Unparseable amount %r in status for %s", data.get("amount"), tracking_id
            )
            amount = Decimal("0")

        return TransactionStatus(
            raw_status=str(data.get("payment_status_description") or data.get("status") or STATUS_UNKNOWN),
            method=data.get("payment_method") or STATUS_UNKNOWN,
            amount=amount,
            currency=data.get("currency") or self.currency,
            confirmation_code=data.get("confirmation_code"),
            raw_response=data,
        )


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(error) -> str:
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or "Unknown error"
    return str(error)


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code in (401, 403):
        raise GatewayAuthFailed("PesaPal authentication failed")
    if response.status_code >= 500:
        raise GatewayUnavailable(f"PesaPal service returned HTTP {response.status_code}")
    if response.status_code >= 400:
        raise GatewayError(f"PesaPal rejected the request (HTTP {response.status_code})")


def get_gateway() -> PesapalGateway:
    """Gateway registered on the current app (created from config on first use)."""
    gateway = current_app.extensions.get(EXTENSION_KEY)
    if gateway is None:
        gateway = PesapalGateway.from_config(current_app.config)
        current_app.extensions[EXTENSION_KEY] = gateway
    return gateway
