"""
Validators — Amount parsing and contact-field normalization.
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from carepay.errors import InvalidAmount

TWO_PLACES = Decimal("0.01")


def parse_major_amount(amount) -> Decimal:
    """Parse a major-unit amount (rupees). Raises InvalidAmount unless numeric and > 0."""
    if amount is None or isinstance(amount, bool) or (isinstance(amount, str) and not amount.strip()):
        raise InvalidAmount("Amount is required")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Amount must be numeric, got {amount!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"Amount must be greater than zero, got {amount!r}")
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def optional_major_amount(amount) -> Decimal | None:
    """Like parse_major_amount, but absent, zero or junk values become None."""
    try:
        return parse_major_amount(amount)
    except InvalidAmount:
        return None


def to_minor_units(amount: Decimal, factor: int = 100) -> int:
    """Rupees -> paise, rounded half-up to a whole number."""
    return int((amount * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount, factor: int = 100) -> Decimal | None:
    """Paise -> rupees. Returns None for absent, non-numeric or non-positive input."""
    if amount is None or isinstance(amount, bool):
        return None
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return (value / factor).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def normalize_email(email: str | None) -> str | None:
    return email.strip().lower() if email and email.strip() else None


def normalize_phone(phone: str | None) -> str | None:
    """Strip spaces, dashes and brackets; keep a leading +."""
    if not phone:
        return None
    cleaned = re.sub(r"[\s\-().]", "", phone)
    return cleaned or None


def split_name(name: str | None) -> tuple[str | None, str | None]:
    """Split "First Middle Last" into ("First", "Middle Last")."""
    if not name or not name.strip():
        return None, None
    parts = name.strip().split(None, 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)
