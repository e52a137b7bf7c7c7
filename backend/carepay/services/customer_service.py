"""
Customer Service — Best-effort identity matching and merge.
"""
import logging
from typing import Dict, Mapping, Optional, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from carepay.models.customer import CustomerIdentity
from carepay.utils.validators import normalize_email, normalize_phone, split_name

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = ("first_name", "last_name", "email", "phone", "address", "city", "state", "pincode")


def extract_customer_fields(data: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Pull customer fields out of request metadata.

    Accepts both prefixed ("customer_email") and plain ("email") keys and a
    single "customer_name"/"name" that is split into first/last. Empty values
    are dropped.
    """
    if not data:
        return {}

    def pick(*keys):
        for key in keys:
            value = data.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
        return None

    first, last = pick("first_name"), pick("last_name")
    if not first:
        first, split_last = split_name(pick("customer_name", "name"))
        last = last or split_last

    fields = {
        "first_name": first,
        "last_name": last,
        "email": normalize_email(pick("customer_email", "email")),
        "phone": normalize_phone(pick("customer_phone", "phone", "contact")),
        "address": pick("address"),
        "city": pick("city"),
        "state": pick("state"),
        "pincode": pick("pincode"),
    }
    return {k: v for k, v in fields.items() if v}


class CustomerService:
    """Finds the "same" customer by email OR phone and merges new details in."""

    @staticmethod
    def find(db: Session, email: Optional[str], phone: Optional[str]) -> Optional[CustomerIdentity]:
        """Email match first, then phone match."""
        email = normalize_email(email)
        phone = normalize_phone(phone)
        customer = None
        if email:
            customer = (
                db.query(CustomerIdentity)
                .filter(func.lower(CustomerIdentity.email) == email)
                .order_by(CustomerIdentity.id.asc())
                .first()
            )
        if customer is None and phone:
            customer = (
                db.query(CustomerIdentity)
                .filter(CustomerIdentity.phone == phone)
                .order_by(CustomerIdentity.id.asc())
                .first()
            )
        return customer

    @staticmethod
    def upsert(db: Session, fields: Mapping[str, str]) -> Optional[CustomerIdentity]:
        """Merge fields into the matching customer, or create one.

        Only non-empty incoming values are applied, so a stored value never
        becomes empty. Returns None when the fields carry no identity at all.
        Does not commit.
        """
        fields = {k: v for k, v in fields.items() if k in IDENTITY_FIELDS and v}
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        if "phone" in fields:
            fields["phone"] = normalize_phone(fields["phone"])
        fields = {k: v for k, v in fields.items() if v}
        if not (fields.get("email") or fields.get("phone")):
            return None

        customer = CustomerService.find(db, fields.get("email"), fields.get("phone"))
        if customer is None:
            customer = CustomerIdentity(**{"first_name": "Customer", **fields})
            db.add(customer)
            db.flush()
            logger.info("Customer %s created", customer.id, extra={"email": customer.email})
            return customer

        changed = []
        for key, value in fields.items():
            if getattr(customer, key) != value:
                setattr(customer, key, value)
                changed.append(key)
        if changed:
            db.flush()
            logger.info("Customer %s updated: %s", customer.id, ", ".join(changed))
        return customer
