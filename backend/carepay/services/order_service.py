"""
Order Issuer — Creates a gateway order and the local pending PaymentRecord.

If the remote gateway cannot be reached (or credentials are missing) the order
is synthesized locally and the response says so through demo_mode. The
substitution is permanent for that call, never retried.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from carepay.config import Settings
from carepay.errors import Contention, GatewayUnavailable, PartialWriteFailure
from carepay.models.payment import PaymentRecord, PaymentStatus
from carepay.services.audit_service import AuditService
from carepay.services.booking_service import BookingService
from carepay.services.customer_service import CustomerService, extract_customer_fields
from carepay.services.gateway import DemoGateway, PaymentGateway
from carepay.utils.validators import parse_major_amount, to_minor_units

logger = logging.getLogger(__name__)

# Metadata keys forwarded to the gateway as order notes
NOTE_KEYS = ("customer_name", "customer_email", "customer_phone", "reference_id", "service_type", "description")

DEMO_ID_ATTEMPTS = 3


@dataclass
class IssuedOrder:
    gateway_order_id: str
    amount: Decimal            # major units
    amount_minor: int
    currency: str
    demo_mode: bool
    key_id: Optional[str]
    record: PaymentRecord
    case_id: Optional[int] = None
    case_code: Optional[str] = None


def insert_pending_record(db: Session, order_id: str, values: Mapping[str, Any]) -> Optional[PaymentRecord]:
    """Insert a fresh PaymentRecord. Returns None when the order id is already taken."""
    if db.query(PaymentRecord.id).filter(PaymentRecord.gateway_order_id == order_id).first():
        return None
    try:
        with db.begin_nested():
            record = PaymentRecord(gateway_order_id=order_id, **values)
            db.add(record)
        return record
    except IntegrityError:
        return None


class OrderIssuer:
    """Issues gateway orders and records them locally as pending payments."""

    def __init__(self, settings: Settings, gateway: PaymentGateway):
        self.settings = settings
        self.gateway = gateway
        self.fallback = gateway if gateway.demo_mode else DemoGateway(
            settings.RAZORPAY_KEY_ID or None, settings.CALLBACK_BASE_URL,
        )

    def issue_order(
        self,
        db: Session,
        amount,
        currency: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> IssuedOrder:
        """Create an order for a major-unit amount.

        Args:
            db: Database session. Committed on success.
            amount: Amount in rupees; must be numeric and greater than zero.
            currency: ISO currency code, DEFAULT_CURRENCY when omitted.
            metadata: Optional customer_*, reference_id, description,
                service_type, service_datetime and notes entries.

        Raises:
            InvalidAmount: amount is missing, non-numeric or not positive.
            Contention: no free demo order id could be stored.
        """
        amount_major = parse_major_amount(amount)
        currency = (currency or self.settings.DEFAULT_CURRENCY).upper()
        metadata = dict(metadata or {})
        amount_minor = to_minor_units(amount_major, self.settings.MINOR_UNIT_FACTOR)

        receipt = str(metadata.get("reference_id") or f"rcpt_{int(time.time())}")
        notes = self._gateway_notes(metadata)
        order, demo = self._create_remote_order(amount_minor, currency, receipt, notes)

        customer_fields = extract_customer_fields(metadata)
        values = self._pending_values(amount_major, currency, demo, metadata, customer_fields)
        record = insert_pending_record(db, order["id"], values)

        attempts = 1
        while record is None and demo and attempts < DEMO_ID_ATTEMPTS:
            logger.warning("Demo order id %s already recorded; synthesizing another", order["id"])
            order = self.fallback.create_order(amount_minor, currency, receipt, notes)
            record = insert_pending_record(db, order["id"], values)
            attempts += 1
        if record is None and demo:
            raise Contention("Could not store a unique demo order id", {"order_id": order["id"]})
        if record is None:
            record = self._adopt_existing(db, order["id"], values)

        order_id = record.gateway_order_id
        case = None
        if not record.is_captured:
            service_type = (metadata.get("service_type") or "").strip() or None
            case = self._record_booking(db, record, customer_fields, service_type, metadata.get("service_datetime"))

        AuditService.log(db, order_id, "ORDER_ISSUED", payload={
            "amount": amount_major,
            "amount_minor": amount_minor,
            "currency": currency,
            "demo": demo,
            "case_id": case.id if case else None,
        })
        db.commit()
        db.refresh(record)

        logger.info(
            "Order %s issued for %s %s%s", order_id, amount_major, currency, " (demo)" if demo else "",
            extra={"order_id": order_id, "demo_mode": demo},
        )
        return IssuedOrder(
            gateway_order_id=order_id,
            amount=amount_major,
            amount_minor=amount_minor,
            currency=currency,
            demo_mode=demo,
            key_id=self.gateway.key_id,
            record=record,
            case_id=case.id if case else None,
            case_code=case.case_code if case else None,
        )

    # ─── Internal helpers ────────────────────────────────────────────

    def _create_remote_order(self, amount_minor: int, currency: str, receipt: str, notes: Dict):
        """Returns (order entity, demo flag)."""
        if not self.gateway.demo_mode:
            try:
                order = self.gateway.create_order(amount_minor, currency, receipt, notes)
                if order.get("id"):
                    return order, False
                logger.error("Gateway order response carried no id: %s", order)
            except GatewayUnavailable as e:
                logger.warning(
                    "Gateway order creation failed, falling back to demo order: %s", e.message,
                    extra={"context": e.context},
                )
        return self.fallback.create_order(amount_minor, currency, receipt, notes), True

    @staticmethod
    def _gateway_notes(metadata: Mapping[str, Any]) -> Dict[str, str]:
        notes = {k: str(metadata[k]) for k in NOTE_KEYS if metadata.get(k)}
        extra = metadata.get("notes")
        if isinstance(extra, Mapping):
            notes.update({str(k): str(v) for k, v in extra.items() if v is not None})
        return notes

    @staticmethod
    def _pending_values(
        amount: Decimal,
        currency: str,
        demo: bool,
        metadata: Mapping[str, Any],
        customer_fields: Mapping[str, str],
    ) -> Dict[str, Any]:
        full_name = " ".join(p for p in (customer_fields.get("first_name"), customer_fields.get("last_name")) if p)
        return dict(
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            demo=demo,
            customer_name=metadata.get("customer_name") or full_name or None,
            customer_email=customer_fields.get("email"),
            customer_phone=customer_fields.get("phone"),
            reference_id=metadata.get("reference_id"),
            service_type=(metadata.get("service_type") or "").strip() or None,
            notes=dict(metadata.get("notes") or {}),
        )

    @staticmethod
    def _adopt_existing(db: Session, order_id: str, values: Mapping[str, Any]) -> PaymentRecord:
        """A callback recorded this gateway order first. Fill its blanks, never its state."""
        record = db.query(PaymentRecord).filter(PaymentRecord.gateway_order_id == order_id).one()
        logger.info("Order %s already recorded as %s; keeping its state", order_id, record.status)
        for key, value in values.items():
            if key in ("status", "demo") or value in (None, "", {}):
                continue
            if not getattr(record, key):
                setattr(record, key, value)
        db.flush()
        return record

    def _record_booking(
        self,
        db: Session,
        record: PaymentRecord,
        customer_fields: Mapping[str, str],
        service_type: Optional[str],
        service_datetime: Optional[datetime],
    ):
        """Customer upsert plus a pending case. Failures here never fail the order."""
        if not customer_fields and not service_type:
            return None
        try:
            with db.begin_nested():
                customer = CustomerService.upsert(db, customer_fields)
                if not service_type:
                    return None
                BookingService.ensure_service_type(db, service_type)
                case = BookingService.create_case(
                    db,
                    customer_id=customer.id if customer else None,
                    service_type=service_type,
                    service_datetime=service_datetime,
                    amount=record.amount,
                    order_id=record.gateway_order_id,
                )
                record.case_id = case.id
            return case
        except SQLAlchemyError as e:
            failure = PartialWriteFailure(
                "Customer/booking write failed during order issuance",
                {"order_id": record.gateway_order_id, "error": str(e)},
            )
            logger.error("%s: %s", failure.code, failure.message, extra={"context": failure.context})
            return None
