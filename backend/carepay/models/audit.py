"""
Payment Event Model — Append-only, tamper-evident trail of payment transitions.
Every event is SHA-256 hashed and chained to the previous event of its order.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON

from carepay.database import Base


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    order_id = Column(String(64), nullable=False, index=True)

    action = Column(String(50), nullable=False)
    # Actions: ORDER_ISSUED, PAYMENT_CAPTURED, PAYMENT_FAILED,
    #          TRANSITION_REJECTED, PAYMENT_PROJECTED

    payload_hash = Column(String(64))       # Chain hash of the event payload
    previous_hash = Column(String(64))      # Hash of the previous event for this order

    event_metadata = Column(JSON, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow)
