"""
Payment Method — Tagged variant for how a payment was made.
"""
from enum import Enum
from typing import Mapping, Any


class PaymentMethod(str, Enum):
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "PaymentMethod":
        """Map a free-form gateway/request string to a tag."""
        if isinstance(value, PaymentMethod):
            return value
        text = str(value or "").strip().lower().replace("-", "").replace("_", "").replace(" ", "")
        aliases = {
            "card": cls.CARD, "creditcard": cls.CARD, "debitcard": cls.CARD, "emi": cls.CARD,
            "upi": cls.UPI, "upilite": cls.UPI,
            "netbanking": cls.NETBANKING, "nb": cls.NETBANKING,
            "wallet": cls.WALLET,
        }
        return aliases.get(text, cls.UNKNOWN)

    @property
    def is_specific(self) -> bool:
        return self is not PaymentMethod.UNKNOWN


def resolve_payment_method(data: Mapping[str, Any] | None) -> PaymentMethod:
    """Resolve the method from a gateway payment entity or callback body.

    Priority: explicit "method" field, then card details, UPI VPA,
    bank code, wallet name.
    """
    if not data:
        return PaymentMethod.UNKNOWN
    explicit = PaymentMethod.parse(data.get("method"))
    if explicit.is_specific:
        return explicit
    if data.get("card") or data.get("card_id") or data.get("card_last4"):
        return PaymentMethod.CARD
    upi = data.get("upi")
    if data.get("vpa") or (isinstance(upi, dict) and upi.get("vpa")):
        return PaymentMethod.UPI
    if data.get("bank"):
        return PaymentMethod.NETBANKING
    if data.get("wallet"):
        return PaymentMethod.WALLET
    return PaymentMethod.UNKNOWN


def merge_payment_method(existing, incoming: PaymentMethod) -> PaymentMethod:
    """Keep the existing method unless the incoming one is concrete."""
    if incoming.is_specific:
        return incoming
    return PaymentMethod.parse(existing)
