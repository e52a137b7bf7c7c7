"""
Shared fixtures: in-memory database, a recording fake gateway, and an app
wired to both.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carepay.config import Settings
from carepay.database import build_engine, get_db, init_db
from carepay.errors import GatewayUnavailable
from carepay.main import create_app
from carepay.services.gateway import PaymentGateway
from carepay.utils.hashing import generate_payment_signature, verify_payment_signature

KEY_ID = "rzp_test_unit_key"
KEY_SECRET = "unit_test_secret"


class FakeGateway(PaymentGateway):
    """In-memory gateway that records every remote call it would have made."""

    demo_mode = False

    def __init__(self):
        self.key_id = KEY_ID
        self.calls = []
        self.failing = set()
        self.orders = {}
        self.payments = {}
        self.links = {}
        self._seq = 0

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.failing:
            raise GatewayUnavailable(f"Gateway {name} failed: timed out", {"call": name})

    def call_names(self):
        return [c[0] for c in self.calls]

    def add_payment(self, order_id, payment_id, amount, status="captured", method="card", **extra):
        payment = {
            "id": payment_id,
            "order_id": order_id,
            "amount": amount,
            "currency": "INR",
            "status": status,
            "method": method,
            "created_at": len(self.payments) + 1,
            **extra,
        }
        self.payments[payment_id] = payment
        return payment

    def create_order(self, amount, currency, receipt, notes=None):
        self._call("create_order", amount, currency, receipt)
        self._seq += 1
        order = {
            "id": f"order_TEST{self._seq:06d}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": notes or {},
        }
        self.orders[order["id"]] = order
        return order

    def fetch_order(self, order_id):
        self._call("fetch_order", order_id)
        return self.orders.get(order_id, {"id": order_id, "status": "created"})

    def fetch_payment(self, payment_id):
        self._call("fetch_payment", payment_id)
        if payment_id not in self.payments:
            raise GatewayUnavailable(f"Gateway GET /payments/{payment_id} failed: not found", {"status_code": 400})
        return self.payments[payment_id]

    def fetch_payments_for_order(self, order_id):
        self._call("fetch_payments_for_order", order_id)
        return [p for p in self.payments.values() if p["order_id"] == order_id]

    def verify_signature(self, order_id, payment_id, signature):
        return verify_payment_signature(order_id, payment_id, signature, KEY_SECRET)

    def _link(self, link_id):
        if link_id not in self.links:
            raise GatewayUnavailable(f"Gateway payment link {link_id} failed: not found", {"status_code": 400})
        return self.links[link_id]

    def create_payment_link(self, payload):
        self._call("create_payment_link", payload["amount"], payload["currency"])
        self._seq += 1
        link = {
            **payload,
            "id": f"plink_TEST{self._seq:06d}",
            "short_url": f"https://rzp.io/i/T{self._seq:06d}",
            "status": "created",
            "amount_paid": 0,
            "payments": None,
        }
        self.links[link["id"]] = link
        return link

    def fetch_payment_link(self, link_id):
        self._call("fetch_payment_link", link_id)
        return self._link(link_id)

    def update_payment_link(self, link_id, changes):
        self._call("update_payment_link", link_id)
        link = self._link(link_id)
        link.update(changes)
        return link

    def cancel_payment_link(self, link_id):
        self._call("cancel_payment_link", link_id)
        link = self._link(link_id)
        link["status"] = "cancelled"
        return link

    def notify_payment_link(self, link_id, medium):
        self._call("notify_payment_link", link_id, medium)
        self._link(link_id)
        return {"success": True}

    def pay_link(self, link_id, payment_id, method="upi"):
        """Simulate a customer paying through the hosted link."""
        link = self.links[link_id]
        payment = self.add_payment(f"order_FOR_{link_id}", payment_id, link["amount"], method=method)
        link.update(status="paid", amount_paid=link["amount"], order_id=payment["order_id"])
        link["payments"] = [{
            "payment_id": payment_id,
            "plink_id": link_id,
            "amount": link["amount"],
            "method": method,
            "status": "captured",
        }]
        return payment


def sign(order_id, payment_id):
    return generate_payment_signature(order_id, payment_id, KEY_SECRET)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL="sqlite://",
        RAZORPAY_KEY_ID=KEY_ID,
        RAZORPAY_KEY_SECRET=KEY_SECRET,
        RETRY_BACKOFF_SECONDS=0,
        LOG_DIR=str(tmp_path / "logs"),
    )


@pytest.fixture
def demo_settings(tmp_path):
    return Settings(
        DATABASE_URL="sqlite://",
        RAZORPAY_KEY_ID="",
        RAZORPAY_KEY_SECRET="",
        RETRY_BACKOFF_SECONDS=0,
        LOG_DIR=str(tmp_path / "logs"),
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings, poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


def _client_for(app, session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


@pytest.fixture
def client(settings, gateway, session_factory):
    return _client_for(create_app(settings=settings, gateway=gateway), session_factory)


@pytest.fixture
def demo_client(demo_settings, session_factory):
    return _client_for(create_app(settings=demo_settings), session_factory)
