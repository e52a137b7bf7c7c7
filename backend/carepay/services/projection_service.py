"""
Domain State Projector — Applies a confirmed payment to customer and booking state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from carepay.config import Settings
from carepay.errors import Contention
from carepay.models.booking import BookingCase, CasePaymentStatus, ServiceType
from carepay.models.payment import PaymentRecord
from carepay.services.audit_service import AuditService
from carepay.services.booking_service import BookingService
from carepay.services.customer_service import CustomerService
from carepay.utils.retry import is_lock_error, with_retry
from carepay.utils.validators import normalize_email, normalize_phone, split_name

logger = logging.getLogger(__name__)


@dataclass
class Projection:
    customer_id: Optional[int]
    case_id: int
    case_code: str
    service_type_id: Optional[int]
    service_type: str
    already_applied: bool = False


class DomainStateProjector:
    """Marks exactly one booking case paid for a captured order."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def project(
        self,
        db: Session,
        record: PaymentRecord,
        case_ref=None,
        service_type: Optional[str] = None,
        customer_fields: Optional[Mapping[str, str]] = None,
        service_datetime: Optional[datetime] = None,
    ) -> Optional[Projection]:
        """Project a captured payment onto customer, service type and case.

        Runs as a single transaction, retried on lock contention with a fixed
        backoff. Projecting the same order again reuses the case it already
        paid. Returns None for a record that is not captured.

        Raises:
            Contention: storage stayed locked through every attempt.
        """
        if not record.is_captured:
            logger.warning("Refusing to project order %s in status %s", record.gateway_order_id, record.status)
            return None
        order_id = record.gateway_order_id

        def apply_projection() -> Projection:
            try:
                projection = self._apply(db, order_id, case_ref, service_type, customer_fields or {}, service_datetime)
                db.commit()
                return projection
            except OperationalError as e:
                db.rollback()
                if is_lock_error(e):
                    raise Contention(f"Storage busy while projecting order {order_id}", {"order_id": order_id})
                raise

        projection = with_retry(
            apply_projection,
            max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
            backoff=self.settings.RETRY_BACKOFF_SECONDS,
        )
        logger.info(
            "Order %s projected onto case %s (customer %s)%s",
            order_id, projection.case_code, projection.customer_id,
            " [already applied]" if projection.already_applied else "",
            extra={"order_id": order_id},
        )
        return projection

    def _apply(
        self,
        db: Session,
        order_id: str,
        case_ref,
        service_type: Optional[str],
        customer_fields: Mapping[str, str],
        service_datetime: Optional[datetime],
    ) -> Projection:
        record = db.query(PaymentRecord).filter(PaymentRecord.gateway_order_id == order_id).one()

        linked = db.get(BookingCase, record.case_id) if record.case_id else None
        if (
            case_ref is None
            and linked is not None
            and linked.payment_status == CasePaymentStatus.PAID
            and linked.order_id == order_id
        ):
            return self._describe(db, linked, already_applied=True)

        incoming = {k: v for k, v in customer_fields.items() if v}
        customer = CustomerService.upsert(db, {**self._snapshot_fields(record), **incoming})

        label = (
            (service_type or "").strip()
            or record.service_type
            or (linked.service_type if linked else None)
            or self.settings.DEFAULT_SERVICE_TYPE
        )
        type_row = BookingService.ensure_service_type(db, label)

        case = BookingService.find_by_ref(db, case_ref)
        if case is None:
            case = linked or BookingService.find_by_order(db, order_id)
        if case is None and customer is not None:
            case = BookingService.latest_matching_case(db, customer.id, label, service_datetime)

        amount = record.amount if record.amount else None
        if case is None:
            case = BookingService.create_case(
                db,
                customer_id=customer.id if customer else None,
                service_type=label,
                service_datetime=service_datetime,
                amount=amount,
                order_id=order_id,
                payment_status=CasePaymentStatus.PAID,
            )
        else:
            if amount is not None:
                case.amount = amount
            case.payment_status = CasePaymentStatus.PAID
            case.order_id = order_id
            if customer is not None and case.customer_id is None:
                case.customer_id = customer.id
            if not case.service_type:
                case.service_type = label
            if service_datetime is not None:
                case.service_datetime = service_datetime
        record.case_id = case.id
        db.flush()

        AuditService.log(db, order_id, "PAYMENT_PROJECTED", payload={
            "case_id": case.id,
            "case_code": case.case_code,
            "customer_id": case.customer_id,
            "service_type": label,
        })
        return Projection(
            customer_id=case.customer_id,
            case_id=case.id,
            case_code=case.case_code,
            service_type_id=type_row.id,
            service_type=label,
        )

    @staticmethod
    def _snapshot_fields(record: PaymentRecord) -> dict:
        """Customer fields from the denormalized snapshot on the payment record."""
        first, last = split_name(record.customer_name)
        fields = {
            "first_name": first,
            "last_name": last,
            "email": normalize_email(record.customer_email),
            "phone": normalize_phone(record.customer_phone),
        }
        return {k: v for k, v in fields.items() if v}

    @staticmethod
    def _describe(db: Session, case: BookingCase, already_applied: bool = False) -> Projection:
        type_row = db.query(ServiceType).filter(ServiceType.type == case.service_type).first()
        return Projection(
            customer_id=case.customer_id,
            case_id=case.id,
            case_code=case.case_code,
            service_type_id=type_row.id if type_row else None,
            service_type=case.service_type,
            already_applied=already_applied,
        )
