"""
Booking Service — Service type registry and booking case lookup/creation.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carepay.models.booking import BookingCase, ServiceType, CasePaymentStatus

logger = logging.getLogger(__name__)


class BookingService:
    """Helpers shared by order issuance and payment projection. None of them commit."""

    @staticmethod
    def ensure_service_type(db: Session, label: str) -> ServiceType:
        """Create-if-absent by label; safe against a concurrent insert."""
        label = label.strip()
        existing = db.query(ServiceType).filter(ServiceType.type == label).first()
        if existing:
            return existing
        try:
            with db.begin_nested():
                service_type = ServiceType(type=label)
                db.add(service_type)
            return service_type
        except IntegrityError:
            return db.query(ServiceType).filter(ServiceType.type == label).one()

    @staticmethod
    def next_case_code(db: Session, service_type: Optional[str]) -> str:
        last_id = db.query(func.max(BookingCase.id)).scalar() or 0
        number = last_id + 1
        code = BookingCase.format_case_code(service_type, number)
        while db.query(BookingCase.id).filter(BookingCase.case_code == code).first():
            number += 1
            code = BookingCase.format_case_code(service_type, number)
        return code

    @staticmethod
    def create_case(
        db: Session,
        customer_id: Optional[int],
        service_type: Optional[str],
        service_datetime: Optional[datetime] = None,
        amount: Optional[Decimal] = None,
        order_id: Optional[str] = None,
        payment_status: str = CasePaymentStatus.PENDING,
        agent_id: Optional[str] = None,
    ) -> BookingCase:
        case = BookingCase(
            case_code=BookingService.next_case_code(db, service_type),
            customer_id=customer_id,
            agent_id=agent_id,
            service_type=service_type,
            service_datetime=service_datetime,
            amount=amount,
            payment_status=payment_status,
            order_id=order_id,
        )
        db.add(case)
        db.flush()
        logger.info("Booking case %s created (%s)", case.case_code, payment_status)
        return case

    @staticmethod
    def find_by_ref(db: Session, ref) -> Optional[BookingCase]:
        """Resolve a case reference: numeric id or case code."""
        if ref is None or str(ref).strip() == "":
            return None
        text = str(ref).strip()
        if text.isdigit():
            case = db.get(BookingCase, int(text))
            if case:
                return case
        return db.query(BookingCase).filter(BookingCase.case_code == text).first()

    @staticmethod
    def find_by_order(db: Session, order_id: str) -> Optional[BookingCase]:
        return (
            db.query(BookingCase)
            .filter(BookingCase.order_id == order_id)
            .order_by(BookingCase.id.desc())
            .first()
        )

    @staticmethod
    def latest_matching_case(
        db: Session,
        customer_id: int,
        service_type: str,
        service_datetime: Optional[datetime] = None,
    ) -> Optional[BookingCase]:
        """Latest unpaid case for customer + service type, on the same day when a date is given.

        Paid cases belong to an earlier payment and are never reused.
        """
        query = db.query(BookingCase).filter(
            BookingCase.customer_id == customer_id,
            BookingCase.service_type == service_type,
        )
        if service_datetime is not None:
            day = datetime(service_datetime.year, service_datetime.month, service_datetime.day)
            query = query.filter(
                BookingCase.service_datetime >= day,
                BookingCase.service_datetime < day + timedelta(days=1),
            )
        return (
            query.filter(BookingCase.payment_status != CasePaymentStatus.PAID)
            .order_by(BookingCase.id.desc())
            .first()
        )
