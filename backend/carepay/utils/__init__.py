from carepay.utils.hashing import (
    generate_hash, generate_chain_hash,
    generate_payment_signature, verify_payment_signature,
)
from carepay.utils.validators import (
    parse_major_amount, optional_major_amount, to_minor_units, from_minor_units,
    normalize_email, normalize_phone, split_name,
)
from carepay.utils.payment_method import PaymentMethod, resolve_payment_method, merge_payment_method
from carepay.utils.retry import with_retry, is_lock_error

__all__ = [
    "generate_hash", "generate_chain_hash",
    "generate_payment_signature", "verify_payment_signature",
    "parse_major_amount", "optional_major_amount", "to_minor_units", "from_minor_units",
    "normalize_email", "normalize_phone", "split_name",
    "PaymentMethod", "resolve_payment_method", "merge_payment_method",
    "with_retry", "is_lock_error",
]
