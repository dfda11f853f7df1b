"""
Pytest fixtures for storefront order tests.

Provides an application on in-memory SQLite, a scripted payment gateway,
a recording notification dispatcher, and an order factory.
"""

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.services import notification_service
from storefront.services import pesapal_gateway
from storefront.services.order_service import create_order, get_order
from storefront.services.pesapal_gateway import PaymentInitiation, TransactionStatus
from storefront.validation import ItemInput, ShippingInput


ADMIN_TOKEN = "test-admin-token"


class FakeGateway:
    """
    Stand-in for PesapalGateway.

    statuses maps tracking id -> raw status string; a missing id (or
    lookup_error) produces the adapter's "unknown" failure result.
    """

    def __init__(self):
        self.base_url = "https://gateway.test"
        self.callback_url = "https://shop.test/api/payments/pesapal/ipn"
        self.ipn_id = "ipn-123"
        self.is_configured = True
        self.statuses = {}
        self.lookup_error = None
        self.initiate_error = None
        self.next_tracking_id = "TRACK-1"
        # Called while the checkout request is "in flight", to interleave other writes.
        self.during_initiate = None
        self.status_calls = []
        self.initiate_calls = []
        self.registered_urls = []

    def get_transaction_status(self, tracking_id):
        self.status_calls.append(tracking_id)
        if self.lookup_error or tracking_id not in self.statuses:
            return TransactionStatus(
                raw_status=pesapal_gateway.STATUS_UNKNOWN,
                error=self.lookup_error or "lookup failed",
            )
        return TransactionStatus(raw_status=self.statuses[tracking_id], method="M-Pesa")

    def initiate_payment(self, order_id, amount, phone, email, description="Order Payment"):
        self.initiate_calls.append({
            "order_id": order_id,
            "amount": amount,
            "phone": phone,
            "email": email,
            "description": description,
        })
        if self.initiate_error is not None:
            raise self.initiate_error
        if self.during_initiate is not None:
            self.during_initiate()
        return PaymentInitiation(
            payment_url=f"https://gateway.test/checkout/{self.next_tracking_id}",
            tracking_id=self.next_tracking_id,
        )

    def register_ipn(self, url):
        self.registered_urls.append(url)
        return "ipn-registered"


class RecordingDispatcher:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def kinds(self):
        return [event.kind for event in self.events]


class FailingDispatcher:
    def __init__(self):
        self.attempts = 0

    def notify(self, event):
        self.attempts += 1
        raise RuntimeError("SMS provider down")


@pytest.fixture(scope='function')
def gateway():
    return FakeGateway()


@pytest.fixture(scope='function')
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture(scope='function')
def app(gateway, dispatcher):
    """Create application for testing with a fresh in-memory database."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ADMIN_API_TOKEN': ADMIN_TOKEN,
        'PESAPAL_CONSUMER_KEY': None,
        'PESAPAL_CONSUMER_SECRET': None,
    })
    app.extensions[pesapal_gateway.EXTENSION_KEY] = gateway
    app.extensions[notification_service.EXTENSION_KEY] = dispatcher

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def admin_headers():
    return auth_headers(ADMIN_TOKEN)


@pytest.fixture(scope='function')
def make_order(app):
    """
    Factory for orders in any state.

    Creates through the order store (so the "Order created" timeline entry
    exists) and then forces the requested statuses directly.
    """
    def _make(
        payment_status="pending",
        fulfillment_status="pending",
        tracking_id=None,
        total_amount_cents=250000,
        order_number=None,
    ):
        order = create_order(
            items=[ItemInput(product_ref="SKU-1", name="Maasai Shuka", quantity=2, unit_price_cents=total_amount_cents // 2)],
            shipping=sample_shipping(),
            total_amount_cents=total_amount_cents,
            order_number=order_number,
        )
        order.payment_status = payment_status
        order.fulfillment_status = fulfillment_status
        order.transaction_tracking_id = tracking_id
        db.session.commit()
        return order

    return _make


def sample_shipping() -> ShippingInput:
    return ShippingInput(
        full_name="Wanjiru Kamau",
        email="wanjiru@example.com",
        phone="0712345678",
        address="Moi Avenue 12",
        city="Nairobi",
        region="Nairobi County",
    )


def sample_order_payload(**overrides) -> dict:
    payload = {
        "items": [
            {"product_ref": "SKU-1", "name": "Maasai Shuka", "quantity": 2, "unit_price_cents": 150000},
            {"product_ref": "SKU-2", "name": "Kiondo Basket", "quantity": 1, "unit_price_cents": 80000},
        ],
        "shipping_destination": {
            "full_name": "Wanjiru Kamau",
            "email": "wanjiru@example.com",
            "phone": "0712345678",
            "address": "Moi Avenue 12",
            "city": "Nairobi",
        },
        "total_amount_cents": 380000,
    }
    payload.update(overrides)
    return payload


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def reload_order(reference):
    """Fresh read after a request, which may have written through another session."""
    db.session.expire_all()
    return get_order(reference)
