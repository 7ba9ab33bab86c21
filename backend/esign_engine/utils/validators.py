"""
Validators — Regex and rule-based validation for signer identifiers and contacts.
"""
import re


def validate_email(email: str | None) -> bool:
    """Validate a plain email address: local@domain.tld."""
    if not email:
        return False
    return bool(re.match(r"^[\w.+-]+@[\w-]+(\.[\w-]+)+$", email.strip()))


def validate_phone(phone: str | None) -> bool:
    """Validate an E.164-style phone number: optional +, 8-15 digits."""
    if not phone:
        return False
    cleaned = re.sub(r"[\s()-]", "", phone)
    return bool(re.match(r"^\+?\d{8,15}$", cleaned))


def normalize_identifier(value: str | None) -> str:
    """Normalize an ID / registration number for exact comparison.
    Strips whitespace, dashes and dots; uppercases letters.
    """
    if not value:
        return ""
    return re.sub(r"[\s.\-/]", "", value).upper()


def mask_email(email: str) -> str:
    """Mask email for display: joh●●●●●@example.com."""
    parts = email.split("@")
    if len(parts) != 2 or not parts[0]:
        return email
    local, domain = parts
    if len(local) <= 3:
        return f"{local[0]}●●●●●@{domain}"
    return f"{local[:3]}●●●●●@{domain}"


def mask_phone(phone: str) -> str:
    """Mask phone for display: ●●●●●●1234."""
    if len(phone) <= 4:
        return phone
    return f"●●●●●●{phone[-4:]}"


def sanitize_name(name: str | None) -> str:
    """Basic sanitization for names: strip, collapse whitespace."""
    if not name:
        return ""
    return re.sub(r"\s+", " ", name.strip())
