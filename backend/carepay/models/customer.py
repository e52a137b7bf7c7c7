"""
Customer Identity Model — Matched across bookings by email or phone.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Text
from sqlalchemy.orm import relationship

from carepay.database import Base


class CustomerIdentity(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    first_name = Column(String(100), nullable=False, default="Customer")
    last_name = Column(String(100))
    email = Column(String(150), index=True)
    phone = Column(String(20), index=True)

    address = Column(Text)
    city = Column(String(100))
    state = Column(String(100))
    pincode = Column(String(10))

    created_at = Column(DateTime, default=datetime.utcnow)

    cases = relationship("BookingCase", back_populates="customer", order_by="BookingCase.id")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)
