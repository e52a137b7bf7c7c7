"""
Payment Record Model — One row per gateway order, tracked to completion.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, Numeric, Boolean, ForeignKey

from carepay.database import Base


class PaymentStatus:
    PENDING = "pending"
    CREATED = "created"
    CAPTURED = "captured"
    FAILED = "failed"

    TERMINAL = {CAPTURED}


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    gateway_order_id = Column(String(64), unique=True, nullable=False, index=True)
    gateway_payment_id = Column(String(64), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False, default=0)   # Major units (rupees), never paise
    currency = Column(String(3), default="INR")
    status = Column(String(16), default=PaymentStatus.PENDING)   # pending | created | captured | failed
    method = Column(String(16), default="unknown")               # card | upi | netbanking | wallet | unknown

    # Card details, when the gateway reports them
    card_last4 = Column(String(4))
    card_network = Column(String(32))

    # Denormalized customer snapshot (best-effort)
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    customer_phone = Column(String(20))

    signature = Column(String(128), nullable=True)
    reference_id = Column(String(255))
    notes = Column(JSON, default=dict)

    # Hosted payment link; the link id doubles as gateway_order_id for link payments
    payment_link_url = Column(String(255), nullable=True)

    # Booking created alongside the order, if any
    case_id = Column(Integer, ForeignKey("service_cases.id"), nullable=True)
    service_type = Column(String(100))

    demo = Column(Boolean, default=False)
    failure_reason = Column(String(500))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_captured(self) -> bool:
        return self.status == PaymentStatus.CAPTURED
