"""
Payment Links — Hosted Razorpay links for bookings paid outside checkout.

A link is recorded like an order: one pending PaymentRecord keyed by the link
id, reconciled later from the gateway's view of the link.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from carepay.errors import Contention
from carepay.models.payment import PaymentRecord
from carepay.services.audit_service import AuditService
from carepay.services.customer_service import extract_customer_fields
from carepay.services.order_service import OrderIssuer, insert_pending_record
from carepay.services.reconcile_service import CallbackReconciler, ReconcileOutcome
from carepay.utils.validators import parse_major_amount, to_minor_units

logger = logging.getLogger(__name__)

DEFAULT_LINK_DESCRIPTION = "Payment Link"


@dataclass
class IssuedLink:
    link_id: str
    short_url: Optional[str]
    link_status: str
    amount: Decimal            # major units
    amount_minor: int
    currency: str
    demo_mode: bool
    record: PaymentRecord
    case_id: Optional[int] = None
    case_code: Optional[str] = None


class PaymentLinkService(OrderIssuer):
    """Payment link lifecycle on top of the issuer's pending-record helpers."""

    def create_link(
        self,
        db: Session,
        amount,
        currency: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> IssuedLink:
        """Create a link for a major-unit amount and record it as pending.

        There is no demo fallback; a gateway failure is raised and nothing
        is stored.

        Raises:
            InvalidAmount: amount is missing, non-numeric or not positive.
            GatewayUnavailable: the gateway refused or could not be reached.
        """
        amount_major = parse_major_amount(amount)
        currency = (currency or self.settings.DEFAULT_CURRENCY).upper()
        metadata = dict(metadata or {})
        amount_minor = to_minor_units(amount_major, self.settings.MINOR_UNIT_FACTOR)
        customer_fields = extract_customer_fields(metadata)

        link = self.gateway.create_payment_link(self._link_payload(amount_minor, currency, metadata))
        link_id = link["id"]
        demo = bool(link.get("demo")) or self.gateway.demo_mode

        values = self._pending_values(amount_major, currency, demo, metadata, customer_fields)
        values["payment_link_url"] = link.get("short_url")
        record = insert_pending_record(db, link_id, values)
        if record is None:
            raise Contention(f"Payment link {link_id} is already recorded", {"link_id": link_id})

        service_type = (metadata.get("service_type") or "").strip() or None
        case = self._record_booking(db, record, customer_fields, service_type, metadata.get("service_datetime"))

        AuditService.log(db, link_id, "LINK_ISSUED", payload={
            "amount": amount_major,
            "amount_minor": amount_minor,
            "currency": currency,
            "short_url": link.get("short_url"),
            "demo": demo,
            "case_id": case.id if case else None,
        })
        db.commit()
        db.refresh(record)

        logger.info(
            "Payment link %s issued for %s %s%s", link_id, amount_major, currency, " (demo)" if demo else "",
            extra={"order_id": link_id, "demo_mode": demo},
        )
        return IssuedLink(
            link_id=link_id,
            short_url=link.get("short_url"),
            link_status=link.get("status") or "created",
            amount=amount_major,
            amount_minor=amount_minor,
            currency=currency,
            demo_mode=demo,
            record=record,
            case_id=case.id if case else None,
            case_code=case.case_code if case else None,
        )

    def fetch_link(self, link_id: str) -> Dict:
        return self.gateway.fetch_payment_link(link_id)

    def update_link(self, link_id: str, changes: Mapping[str, Any]) -> Dict:
        changes = {k: v for k, v in changes.items() if v is not None}
        logger.info("Updating payment link %s: %s", link_id, sorted(changes))
        return self.gateway.update_payment_link(link_id, changes)

    def cancel_link(self, db: Session, link_id: str) -> Tuple[Dict, Optional[ReconcileOutcome]]:
        """Cancel at the gateway, then fail the local record unless it was captured."""
        link = self.gateway.cancel_payment_link(link_id)
        record = db.query(PaymentRecord).filter(PaymentRecord.gateway_order_id == link_id).first()
        if record is None:
            logger.info("Cancelled payment link %s has no local record", link_id)
            return link, None
        outcome = CallbackReconciler(self.settings, self.gateway).record_failure(
            db, link_id, error_code="LINK_CANCELLED", error_description="Payment link cancelled",
        )
        return link, outcome

    def notify_link(self, link_id: str, medium: str) -> Dict:
        """medium is "sms" or "email"; the gateway uses the link's stored contact."""
        logger.info("Sending payment link %s by %s", link_id, medium)
        return self.gateway.notify_payment_link(link_id, medium)

    # ─── Internal helpers ────────────────────────────────────────────

    def _link_payload(self, amount_minor: int, currency: str, metadata: Mapping[str, Any]) -> Dict[str, Any]:
        customer = {
            "name": metadata.get("customer_name"),
            "email": metadata.get("customer_email"),
            "contact": metadata.get("customer_phone"),
        }
        customer = {k: v for k, v in customer.items() if v}
        notify_sms = metadata.get("notify_sms")
        notify_email = metadata.get("notify_email")

        payload = {
            "amount": amount_minor,
            "currency": currency,
            "description": metadata.get("description") or DEFAULT_LINK_DESCRIPTION,
            "customer": customer,
            "notify": {
                "sms": bool("contact" in customer if notify_sms is None else notify_sms),
                "email": bool("email" in customer if notify_email is None else notify_email),
            },
            "reminder_enable": metadata.get("reminder_enable", True),
            "notes": self._gateway_notes(metadata),
            "callback_url": metadata.get("callback_url") or self.settings.link_callback_url,
            "callback_method": "get",
        }
        if metadata.get("reference_id"):
            payload["reference_id"] = str(metadata["reference_id"])[:40]
        if metadata.get("expire_by"):
            payload["expire_by"] = int(metadata["expire_by"])
        return payload
