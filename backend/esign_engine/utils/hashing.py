"""
Cryptographic Hashing Utilities — SHA-256 payload hashing for audit trails,
keyed hashing for one-time passcodes.
"""
import hashlib
import hmac
import json


def generate_hash(data: dict) -> str:
    """Generate a SHA-256 hash of a dictionary (deterministic, sorted keys)."""
    canonical = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def generate_chain_hash(current_data: dict, previous_hash: str = "") -> str:
    """Generate a chain hash: SHA-256(previous_hash + current_payload).
    Creates a tamper-evident linked chain for the audit trail.
    """
    current_hash = generate_hash(current_data)
    chain_input = f"{previous_hash}{current_hash}".encode("utf-8")
    return hashlib.sha256(chain_input).hexdigest()


def hash_otp(secret: str, challenge_id: str, code: str) -> str:
    """HMAC-SHA-256 of an OTP code, bound to its challenge.

    The same code issued for two challenges hashes differently, so a stored
    hash is useless outside the challenge it belongs to.
    """
    message = f"{challenge_id}:{code}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def otp_matches(secret: str, challenge_id: str, candidate: str, stored_hash: str) -> bool:
    """Constant-time comparison of a candidate code against a stored hash."""
    return hmac.compare_digest(hash_otp(secret, challenge_id, candidate), stored_hash)
