from esign_engine.utils.hashing import generate_hash, generate_chain_hash, hash_otp, otp_matches
from esign_engine.utils.validators import validate_email, validate_phone, normalize_identifier, mask_email, mask_phone
from esign_engine.utils.clock import utcnow

__all__ = [
    "generate_hash", "generate_chain_hash", "hash_otp", "otp_matches",
    "validate_email", "validate_phone", "normalize_identifier", "mask_email", "mask_phone",
    "utcnow",
]
