"""
Booking Models — Service types and the booking cases that get paid for.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import relationship

from carepay.database import Base


class CasePaymentStatus:
    PENDING = "pending"
    PAID = "paid"


class ServiceType(Base):
    __tablename__ = "service_types"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    type = Column(String(100), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class BookingCase(Base):
    __tablename__ = "service_cases"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    case_code = Column(String(50), unique=True, nullable=False, index=True)  # CASE@Training@00001

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    agent_id = Column(String(45), nullable=True)

    service_type = Column(String(100))
    service_datetime = Column(DateTime, nullable=True)

    amount = Column(Numeric(12, 2), nullable=True)
    payment_status = Column(String(16), default=CasePaymentStatus.PENDING)  # pending | paid
    order_id = Column(String(64), nullable=True, index=True)                # gateway order paying for this case

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = relationship("CustomerIdentity", back_populates="cases")

    @staticmethod
    def format_case_code(service_type: str | None, number: int) -> str:
        label = (service_type or "Service").replace(" ", "")
        return f"CASE@{label}@{number:05d}"
