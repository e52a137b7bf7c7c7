"""
Audit Service — Append-only, hash-chained trail of payment transitions.
"""
from datetime import datetime
from typing import Optional, Dict

from sqlalchemy.orm import Session

from carepay.models.audit import PaymentEvent
from carepay.utils.hashing import generate_chain_hash


class AuditService:
    """Creates tamper-evident payment events with hash chaining."""

    @staticmethod
    def log(
        db: Session,
        order_id: str,
        action: str,
        payload: Optional[Dict] = None,
    ) -> PaymentEvent:
        """Append an event for an order.

        The event joins the caller's transaction; nothing is committed here,
        so an event only exists if the state change it describes does.

        Args:
            db: Database session.
            order_id: Gateway order id the event belongs to.
            action: Action identifier (e.g. ORDER_ISSUED, PAYMENT_CAPTURED).
            payload: Data payload to hash and keep as metadata.

        Returns:
            The pending PaymentEvent.
        """
        last_entry = (
            db.query(PaymentEvent)
            .filter(PaymentEvent.order_id == order_id)
            .order_by(PaymentEvent.id.desc())
            .first()
        )
        previous_hash = last_entry.payload_hash if last_entry else ""

        payload_data = payload or {}
        entry = PaymentEvent(
            order_id=order_id,
            action=action,
            payload_hash=generate_chain_hash(payload_data, previous_hash),
            previous_hash=previous_hash,
            event_metadata={k: (str(v) if v is not None else None) for k, v in payload_data.items()},
            timestamp=datetime.utcnow(),
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def get_trail(db: Session, order_id: str) -> list[PaymentEvent]:
        """Get the full event trail for an order, ordered chronologically."""
        return (
            db.query(PaymentEvent)
            .filter(PaymentEvent.order_id == order_id)
            .order_by(PaymentEvent.id.asc())
            .all()
        )

    @staticmethod
    def verify_chain(db: Session, order_id: str) -> dict:
        """Verify the integrity of the event chain for an order.

        Returns:
            dict with 'valid' (bool), 'total_entries', and 'broken_at' (if invalid).
        """
        entries = AuditService.get_trail(db, order_id)

        if not entries:
            return {"valid": True, "total_entries": 0, "broken_at": None}

        for i, entry in enumerate(entries):
            expected_prev = entries[i - 1].payload_hash if i > 0 else ""
            if entry.previous_hash != expected_prev:
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Chain broken at entry {entry.id} ({entry.action})",
                }

        return {"valid": True, "total_entries": len(entries), "broken_at": None}
