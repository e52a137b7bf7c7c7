"""
Cryptographic Hashing Utilities — Gateway signatures and audit chain hashes.
"""
import hashlib
import hmac
import json


def generate_hash(data: dict) -> str:
    """Generate a SHA-256 hash of a dictionary (deterministic, sorted keys)."""
    canonical = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def generate_chain_hash(current_data: dict, previous_hash: str = "") -> str:
    """Generate a chain hash: SHA-256(previous_hash + current_payload)."""
    current_hash = generate_hash(current_data)
    chain_input = f"{previous_hash}{current_hash}".encode("utf-8")
    return hashlib.sha256(chain_input).hexdigest()


def generate_payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    """Razorpay checkout signature: hex HMAC-SHA256 of "order_id|payment_id"."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """Compare a supplied signature against the expected one in constant time."""
    if not (order_id and payment_id and signature and secret):
        return False
    expected = generate_payment_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected, signature.strip())
