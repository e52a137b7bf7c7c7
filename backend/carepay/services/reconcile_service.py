"""
Callback Reconciler — Turns gateway callbacks into one PaymentRecord per order.

Callbacks can arrive without a signature, before the order-creation response
was stored, or more than once. Whatever the order of arrival, the record for an
order converges to the gateway's actual outcome and a captured payment is
never rolled back.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from carepay.config import Settings
from carepay.errors import Contention, GatewayUnavailable, InvalidSignature, NotFound
from carepay.models.payment import PaymentRecord, PaymentStatus
from carepay.services.audit_service import AuditService
from carepay.services.gateway import PaymentGateway
from carepay.utils.payment_method import merge_payment_method, resolve_payment_method
from carepay.utils.retry import is_lock_error
from carepay.utils.validators import from_minor_units, optional_major_amount

logger = logging.getLogger(__name__)

TEST_PAYMENT_ID = "pay_test"
TEST_SIGNATURE = "sig_test"

SUCCESS_STATUSES = ("captured", "authorized")
AMOUNT_TOLERANCE = Decimal("0.01")

LINK_PAID = "paid"
LINK_CLOSED_STATUSES = ("cancelled", "expired")


@dataclass
class ReconcileOutcome:
    status: str                      # success | failure
    order_id: str
    payment_id: Optional[str]
    amount: Optional[Decimal]
    payment_status: str
    signature_verified: bool = False
    test_mode: bool = False
    demo_mode: bool = False
    replayed: bool = False
    message: str = ""
    record: Optional[PaymentRecord] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


def select_payment(payments: List[Dict]) -> Optional[Dict]:
    """First captured/authorized attempt, else the most recent one."""
    if not payments:
        return None
    for payment in payments:
        if payment.get("status") in SUCCESS_STATUSES:
            return payment
    return payments[-1]


class CallbackReconciler:
    """Verifies callbacks, asks the gateway when unsure, and upserts the record."""

    def __init__(self, settings: Settings, gateway: PaymentGateway):
        self.settings = settings
        self.gateway = gateway

    @property
    def demo_mode(self) -> bool:
        return self.gateway.demo_mode

    def reconcile(
        self,
        db: Session,
        order_id: str,
        payment_id: Optional[str] = None,
        signature: Optional[str] = None,
        raw_amount=None,
        callback_data: Optional[Mapping[str, Any]] = None,
    ) -> ReconcileOutcome:
        """Reconcile a success callback (or an admin resolve) for one order.

        Args:
            db: Database session. Committed when the record changes.
            order_id: Gateway order id.
            payment_id: Gateway payment id, if the callback carried one.
            signature: Checkout signature, if the callback carried one.
            raw_amount: Amount from the callback, in major units.
            callback_data: Remaining callback fields (method, card details).

        Raises:
            InvalidSignature: signature present and wrong, or the gateway
                reports the payment under another order. Nothing is written.
            NotFound: the gateway knows no payment and there is no local record.
            GatewayUnavailable: the outcome depends on a gateway call that failed.
            Contention: the write hit a storage lock.
        """
        if not order_id:
            raise NotFound("Callback carries no order id")
        payment_id = payment_id or None
        signature = signature or None
        callback_data = callback_data or {}

        test_mode = payment_id == TEST_PAYMENT_ID or signature == TEST_SIGNATURE
        verified = test_mode
        if not test_mode and payment_id and signature:
            if not self.gateway.verify_signature(order_id, payment_id, signature):
                logger.warning(
                    "Signature mismatch for order %s payment %s", order_id, payment_id,
                    extra={"order_id": order_id},
                )
                raise InvalidSignature(
                    "Payment signature verification failed",
                    {"order_id": order_id, "payment_id": payment_id},
                )
            verified = True

        existing = self._find(db, order_id)
        if existing is not None and existing.is_captured:
            if payment_id and existing.gateway_payment_id and payment_id != existing.gateway_payment_id:
                logger.warning(
                    "Order %s already captured by %s; ignoring callback for %s",
                    order_id, existing.gateway_payment_id, payment_id,
                )
            return self._outcome(existing, verified, test_mode, replayed=True, message="Payment already captured")

        payment = None
        if not test_mode:
            if payment_id is None:
                payment = select_payment(self.gateway.fetch_payments_for_order(order_id))
                if payment is None:
                    if existing is None:
                        raise NotFound(f"No payment found for order {order_id}", {"order_id": order_id})
                    return self._outcome(existing, verified, test_mode, message="No payment attempt found yet")
                payment_id = payment.get("id")
            elif verified:
                payment = self._best_effort(self.gateway.fetch_payment, payment_id)
            else:
                payment = self.gateway.fetch_payment(payment_id)
            self._check_owner(order_id, payment_id, payment)

            if not verified:
                gateway_status = (payment or {}).get("status")
                if gateway_status == PaymentStatus.FAILED:
                    return self.record_failure(
                        db, order_id, payment_id,
                        error_code=(payment or {}).get("error_code"),
                        error_description=(payment or {}).get("error_description") or "Payment failed at gateway",
                    )
                if gateway_status not in SUCCESS_STATUSES:
                    logger.info("Order %s payment %s is %s; nothing to record", order_id, payment_id, gateway_status)
                    return self._unsettled(existing, order_id, payment_id, gateway_status or "unknown", test_mode)

        amount = self._resolve_amount(order_id, raw_amount, payment, existing, test_mode)
        detail = {**callback_data, **(payment or {})}
        record = self._capture(db, order_id, payment_id, amount, detail, existing, {
            "signature": signature,
            "signature_verified": verified,
            "test_mode": test_mode,
        })
        return self._outcome(record, verified, test_mode, message="Payment captured")

    def reconcile_link(self, db: Session, link_id: str) -> ReconcileOutcome:
        """Reconcile a payment link from the gateway's own view of it.

        The link entity is fetched with the API credentials, so no callback
        field is trusted. A paid link captures its record, a cancelled or
        expired one fails it, anything else leaves it untouched.

        Raises:
            NotFound: empty link id.
            GatewayUnavailable: the link could not be fetched.
            Contention: the write hit a storage lock.
        """
        if not link_id:
            raise NotFound("Callback carries no payment link id")
        existing = self._find(db, link_id)
        if existing is not None and existing.is_captured:
            return self._outcome(existing, True, False, replayed=True, message="Payment already captured")

        link = self.gateway.fetch_payment_link(link_id)
        link_status = link.get("status") or "unknown"
        if link_status in LINK_CLOSED_STATUSES:
            if existing is None:
                return self._unsettled(None, link_id, None, link_status, False)
            return self.record_failure(
                db, link_id,
                error_code=f"LINK_{link_status.upper()}",
                error_description=f"Payment link {link_status}",
            )
        if link_status != LINK_PAID:
            return self._unsettled(existing, link_id, None, link_status, False)

        paid = [p for p in link.get("payments") or [] if p.get("status") in SUCCESS_STATUSES]
        entry = paid[-1] if paid else {}
        payment_id = entry.get("payment_id") or entry.get("id")
        payment = self._best_effort(self.gateway.fetch_payment, payment_id) if payment_id else None

        fetched = from_minor_units(
            (payment or {}).get("amount") or entry.get("amount") or link.get("amount_paid"),
            self.settings.MINOR_UNIT_FACTOR,
        )
        amount = self._guard_amount(link_id, fetched, existing)
        detail = {**entry, **(payment or {})}
        record = self._capture(db, link_id, payment_id, amount, detail, existing, {
            "payment_link": True,
            "signature_verified": True,
            "test_mode": False,
        })
        return self._outcome(record, True, False, message="Payment link paid")

    def record_failure(
        self,
        db: Session,
        order_id: str,
        payment_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None,
        error_reason: Optional[str] = None,
    ) -> ReconcileOutcome:
        """Record a failed payment attempt. A captured record is never downgraded."""
        if not order_id:
            raise NotFound("Failure callback carries no order id")
        reason = error_description or error_reason or error_code or "Payment failed"

        with self._write_guard(db, order_id):
            existing = self._find(db, order_id)
            if existing is not None and existing.is_captured:
                AuditService.log(db, order_id, "TRANSITION_REJECTED", payload={
                    "from": existing.status,
                    "to": PaymentStatus.FAILED,
                    "payment_id": payment_id,
                    "reason": reason,
                })
                db.commit()
                logger.warning(
                    "Rejected failure callback for captured order %s (payment %s)", order_id, payment_id,
                    extra={"order_id": order_id},
                )
                return self._outcome(existing, False, False, message="Payment already captured; failure ignored")

            values = {"status": PaymentStatus.FAILED, "failure_reason": reason[:500]}
            if payment_id:
                values["gateway_payment_id"] = payment_id
            record = self._upsert(db, order_id, values)
            if record.is_captured:
                # Lost a race against a capture; keep the capture
                db.rollback()
                return self._outcome(self._find(db, order_id), False, False, message="Payment already captured; failure ignored")

            AuditService.log(db, order_id, "PAYMENT_FAILED", payload={
                "payment_id": payment_id,
                "error_code": error_code,
                "reason": reason,
            })
            db.commit()

        logger.info("Order %s marked failed: %s", order_id, reason, extra={"order_id": order_id})
        return ReconcileOutcome(
            status="failure",
            order_id=order_id,
            payment_id=record.gateway_payment_id,
            amount=record.amount,
            payment_status=record.status,
            demo_mode=self.demo_mode or bool(record.demo),
            message=reason,
            record=record,
        )

    # ─── Internal helpers ────────────────────────────────────────────

    @staticmethod
    def _find(db: Session, order_id: str) -> Optional[PaymentRecord]:
        return db.query(PaymentRecord).filter(PaymentRecord.gateway_order_id == order_id).first()

    @staticmethod
    def _upsert(db: Session, order_id: str, values: Dict[str, Any]) -> PaymentRecord:
        """Insert-or-update by gateway_order_id. A concurrent insert is re-read and updated."""
        record = CallbackReconciler._find(db, order_id)
        if record is None:
            try:
                with db.begin_nested():
                    record = PaymentRecord(gateway_order_id=order_id, **values)
                    db.add(record)
                return record
            except IntegrityError:
                logger.info("Concurrent insert for order %s; updating the existing row", order_id)
                record = CallbackReconciler._find(db, order_id)
        if record.is_captured and values.get("status") != PaymentStatus.CAPTURED:
            return record
        for key, value in values.items():
            setattr(record, key, value)
        db.flush()
        return record

    @staticmethod
    @contextmanager
    def _write_guard(db: Session, order_id: str):
        """Roll back on storage errors; lock errors become Contention."""
        try:
            yield
        except OperationalError as e:
            db.rollback()
            if is_lock_error(e):
                raise Contention(f"Storage busy while recording order {order_id}", {"order_id": order_id})
            raise

    def _capture(
        self,
        db: Session,
        order_id: str,
        payment_id: Optional[str],
        amount: Optional[Decimal],
        detail: Mapping[str, Any],
        existing: Optional[PaymentRecord],
        audit: Dict[str, Any],
    ) -> PaymentRecord:
        method = merge_payment_method(existing.method if existing else None, resolve_payment_method(detail))
        card = detail.get("card") if isinstance(detail.get("card"), dict) else {}

        values = {
            "gateway_payment_id": payment_id,
            "status": PaymentStatus.CAPTURED,
            "method": method.value,
            "completed_at": datetime.utcnow(),
        }
        signature = audit.pop("signature", None)
        if signature:
            values["signature"] = signature
        if amount is not None:
            values["amount"] = amount
        last4 = card.get("last4") or detail.get("card_last4")
        if last4:
            values["card_last4"] = str(last4)[-4:]
        network = card.get("network") or detail.get("card_network")
        if network:
            values["card_network"] = network
        if detail.get("email") and not (existing and existing.customer_email):
            values["customer_email"] = detail["email"]
        if detail.get("contact") and not (existing and existing.customer_phone):
            values["customer_phone"] = detail["contact"]

        with self._write_guard(db, order_id):
            record = self._upsert(db, order_id, values)
            AuditService.log(db, order_id, "PAYMENT_CAPTURED", payload={
                "payment_id": payment_id,
                "amount": record.amount,
                "method": record.method,
                **audit,
            })
            db.commit()

        logger.info(
            "Order %s captured (payment %s, amount %s, method %s)",
            order_id, payment_id, record.amount, record.method,
            extra={"order_id": order_id, "test_mode": audit.get("test_mode", False)},
        )
        return record

    @staticmethod
    def _check_owner(order_id: str, payment_id: Optional[str], payment: Optional[Dict]):
        """A payment the gateway files under another order never settles this one."""
        owner = (payment or {}).get("order_id")
        if owner and owner != order_id:
            logger.warning(
                "Payment %s belongs to order %s, not %s", payment_id, owner, order_id,
                extra={"order_id": order_id},
            )
            raise InvalidSignature(
                "Payment does not belong to this order",
                {"order_id": order_id, "payment_id": payment_id},
            )

    def _best_effort(self, fetch, *args) -> Optional[Dict]:
        """Gateway lookups that only add detail; failure is logged, never raised."""
        try:
            return fetch(*args)
        except GatewayUnavailable as e:
            logger.warning("Optional gateway lookup failed: %s", e.message, extra={"context": e.context})
            return None

    def _resolve_amount(
        self,
        order_id: str,
        raw_amount,
        payment: Optional[Dict],
        existing: Optional[PaymentRecord],
        test_mode: bool,
    ) -> Optional[Decimal]:
        """Explicit callback amount, else gateway amount / 100, else the stored amount."""
        explicit = optional_major_amount(raw_amount)
        if explicit is not None:
            return explicit

        factor = self.settings.MINOR_UNIT_FACTOR
        fetched = from_minor_units((payment or {}).get("amount"), factor)
        if fetched is None and not test_mode:
            order = self._best_effort(self.gateway.fetch_order, order_id)
            fetched = from_minor_units((order or {}).get("amount"), factor)
        return self._guard_amount(order_id, fetched, existing)

    @staticmethod
    def _guard_amount(order_id: str, fetched: Optional[Decimal], existing: Optional[PaymentRecord]) -> Optional[Decimal]:
        """A fetched amount never overwrites a different non-zero stored one."""
        stored = existing.amount if existing is not None and existing.amount else None
        if fetched is None:
            return stored
        if stored is not None and abs(fetched - Decimal(stored)) > AMOUNT_TOLERANCE:
            logger.warning(
                "Gateway amount %s differs from stored %s for order %s; keeping stored amount",
                fetched, stored, order_id, extra={"order_id": order_id},
            )
            return stored
        return fetched

    def _unsettled(
        self,
        existing: Optional[PaymentRecord],
        order_id: str,
        payment_id: Optional[str],
        gateway_status: str,
        test_mode: bool,
    ) -> ReconcileOutcome:
        """Failure outcome without a write."""
        if existing is not None:
            return self._outcome(existing, False, test_mode, message=f"Payment is {gateway_status}")
        return ReconcileOutcome(
            status="failure", order_id=order_id, payment_id=payment_id, amount=None,
            payment_status=gateway_status, test_mode=test_mode,
            demo_mode=self.demo_mode, message=f"Payment is {gateway_status}",
        )

    def _outcome(
        self,
        record: PaymentRecord,
        verified: bool,
        test_mode: bool,
        replayed: bool = False,
        message: str = "",
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            status="success" if record.is_captured else "failure",
            order_id=record.gateway_order_id,
            payment_id=record.gateway_payment_id,
            amount=record.amount,
            payment_status=record.status,
            signature_verified=verified,
            test_mode=test_mode,
            demo_mode=self.demo_mode or bool(record.demo),
            replayed=replayed,
            message=message,
            record=record,
        )
