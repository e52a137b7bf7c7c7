"""
Payment Gateway — Port plus Razorpay and local demo adapters.

RazorpayGateway talks to the Razorpay REST API (amounts in paise, basic auth
with key id / secret). DemoGateway synthesizes orders, payments and payment
links locally and is used whenever credentials are not configured, or as the
issuance fallback when the real gateway cannot be reached.
"""
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import requests
from requests import RequestException
from requests.auth import HTTPBasicAuth

from carepay.config import Settings
from carepay.errors import GatewayUnavailable
from carepay.utils.hashing import verify_payment_signature

logger = logging.getLogger(__name__)

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}

# Fields Razorpay accepts on PATCH /payment_links/{id}
LINK_UPDATE_FIELDS = ("description", "expire_by", "reminder_enable", "notes", "reference_id", "accept_partial")


class PaymentGateway(ABC):
    """Abstract payment gateway interface. All amounts are minor units."""

    demo_mode: bool = False
    key_id: Optional[str] = None

    @abstractmethod
    def create_order(self, amount: int, currency: str, receipt: str, notes: Optional[Dict] = None) -> Dict:
        """Create an order; returns the gateway order entity (has "id")."""

    @abstractmethod
    def fetch_order(self, order_id: str) -> Dict:
        ...

    @abstractmethod
    def fetch_payment(self, payment_id: str) -> Dict:
        ...

    @abstractmethod
    def fetch_payments_for_order(self, order_id: str) -> List[Dict]:
        """All payment attempts made against an order, oldest first."""

    @abstractmethod
    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check a checkout/callback signature for (order_id, payment_id)."""

    # ─── Payment links ───────────────────────────────────────────────

    @abstractmethod
    def create_payment_link(self, payload: Dict) -> Dict:
        """Create a hosted payment link; returns the link entity (has "id" and "short_url")."""

    @abstractmethod
    def fetch_payment_link(self, link_id: str) -> Dict:
        """Link entity including its "status" and the "payments" made through it."""

    @abstractmethod
    def update_payment_link(self, link_id: str, changes: Dict) -> Dict:
        ...

    @abstractmethod
    def cancel_payment_link(self, link_id: str) -> Dict:
        ...

    @abstractmethod
    def notify_payment_link(self, link_id: str, medium: str) -> Dict:
        """Re-send the link to its customer by "sms" or "email"."""


class RazorpayGateway(PaymentGateway):
    """Razorpay REST v1 adapter built on requests."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.key_id = settings.RAZORPAY_KEY_ID
        self._secret = settings.RAZORPAY_KEY_SECRET
        self.base_url = settings.RAZORPAY_BASE_URL.rstrip("/")
        self.timeout = settings.GATEWAY_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self.session.auth = HTTPBasicAuth(self.key_id, self._secret)
        self.session.headers.update(COMMON_HEADERS)

    def _request(self, method: str, path: str, **kwargs) -> Dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except RequestException as e:
            raise GatewayUnavailable(f"Gateway request failed: {e}", {"url": url})

        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text[:800]}

        if 200 <= resp.status_code < 300:
            return data

        error = (data.get("error") or {}) if isinstance(data, dict) else {}
        description = error.get("description") or f"HTTP {resp.status_code}"
        raise GatewayUnavailable(
            f"Gateway {method} {path} failed: {description}",
            {"status_code": resp.status_code, "gateway_code": error.get("code")},
        )

    def create_order(self, amount: int, currency: str, receipt: str, notes: Optional[Dict] = None) -> Dict:
        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt[:40],   # Razorpay limit
            "payment_capture": 1,
            "notes": notes or {},
        }
        return self._request("POST", "/orders", json=payload)

    def fetch_order(self, order_id: str) -> Dict:
        return self._request("GET", f"/orders/{order_id}")

    def fetch_payment(self, payment_id: str) -> Dict:
        return self._request("GET", f"/payments/{payment_id}")

    def fetch_payments_for_order(self, order_id: str) -> List[Dict]:
        data = self._request("GET", f"/orders/{order_id}/payments")
        items = data.get("items", []) if isinstance(data, dict) else []
        return sorted(items, key=lambda p: p.get("created_at") or 0)

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return verify_payment_signature(order_id, payment_id, signature, self._secret)

    def create_payment_link(self, payload: Dict) -> Dict:
        return self._request("POST", "/payment_links", json=payload)

    def fetch_payment_link(self, link_id: str) -> Dict:
        return self._request("GET", f"/payment_links/{link_id}")

    def update_payment_link(self, link_id: str, changes: Dict) -> Dict:
        body = {k: v for k, v in changes.items() if k in LINK_UPDATE_FIELDS and v is not None}
        return self._request("PATCH", f"/payment_links/{link_id}", json=body)

    def cancel_payment_link(self, link_id: str) -> Dict:
        return self._request("POST", f"/payment_links/{link_id}/cancel")

    def notify_payment_link(self, link_id: str, medium: str) -> Dict:
        return self._request("POST", f"/payment_links/{link_id}/notify_by/{medium}")


class DemoGateway(PaymentGateway):
    """Local stand-in used without credentials. Never makes network calls."""

    demo_mode = True

    def __init__(self, key_id: Optional[str] = None, link_base_url: str = "http://127.0.0.1:8000"):
        self.key_id = key_id or "rzp_test_demo"
        self.link_base_url = link_base_url.rstrip("/")

    @staticmethod
    def new_order_id() -> str:
        return f"demo_order_{int(time.time())}_{uuid.uuid4().hex}"

    @staticmethod
    def new_link_id() -> str:
        return f"plink_demo_{int(time.time())}_{uuid.uuid4().hex}"

    def create_order(self, amount: int, currency: str, receipt: str, notes: Optional[Dict] = None) -> Dict:
        order_id = self.new_order_id()
        logger.info("Demo order %s synthesized for %s %s", order_id, amount, currency)
        return {
            "id": order_id,
            "entity": "order",
            "amount": int(amount),
            "amount_paid": 0,
            "amount_due": int(amount),
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "attempts": 0,
            "notes": notes or {},
            "demo": True,
        }

    def fetch_order(self, order_id: str) -> Dict:
        return {"id": order_id, "amount": 0, "currency": "INR", "status": "created", "demo": True}

    def fetch_payment(self, payment_id: str) -> Dict:
        return {"id": payment_id, "status": "captured", "amount": 0, "currency": "INR", "demo": True}

    def fetch_payments_for_order(self, order_id: str) -> List[Dict]:
        return [{
            "id": f"pay_demo_{int(time.time())}",
            "order_id": order_id,
            "status": "captured",
            "amount": 0,
            "currency": "INR",
            "method": "card",
            "demo": True,
        }]

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        # No secret to check against: only demo/test payment ids pass
        return bool(payment_id) and ("demo" in payment_id or "test" in payment_id)

    def create_payment_link(self, payload: Dict) -> Dict:
        link_id = self.new_link_id()
        logger.info("Demo payment link %s synthesized for %s %s", link_id, payload.get("amount"), payload.get("currency"))
        return {
            **payload,
            "id": link_id,
            "entity": "payment_link",
            "amount_paid": 0,
            "short_url": f"{self.link_base_url}/demo-payment/{link_id}",
            "status": "created",
            "payments": None,
            "demo": True,
        }

    def fetch_payment_link(self, link_id: str) -> Dict:
        return {"id": link_id, "status": "created", "amount": 0, "amount_paid": 0, "payments": None, "demo": True}

    def update_payment_link(self, link_id: str, changes: Dict) -> Dict:
        return {**changes, "id": link_id, "status": "created", "demo": True}

    def cancel_payment_link(self, link_id: str) -> Dict:
        return {"id": link_id, "status": "cancelled", "demo": True}

    def notify_payment_link(self, link_id: str, medium: str) -> Dict:
        logger.info("Demo mode: %s notification for %s simulated", medium, link_id)
        return {"success": True, "demo": True}


def build_gateway(settings: Settings) -> PaymentGateway:
    """Pick the adapter for the configured credentials."""
    if settings.gateway_configured:
        return RazorpayGateway(settings)
    logger.warning("Razorpay credentials not configured; running in demo mode")
    return DemoGateway(settings.RAZORPAY_KEY_ID or None, settings.CALLBACK_BASE_URL)
