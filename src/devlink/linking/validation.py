"""Phone number validation and identity derivation."""

import hashlib
import re

from devlink.errors import InvalidNumberError

# 10-15 digits, no separators, no leading "+"
PHONE_NUMBER_PATTERN = re.compile(r"[0-9]{10,15}")

SESSION_ID_LENGTH = 16


def sanitize_number(raw: str) -> str:
    """Strip everything but digits from a user-supplied number.

    Only used by the legacy endpoint, which accepts numbers with
    separators or a leading "+".
    """
    return re.sub(r"[^0-9]", "", raw or "")


def validate_number(phone_number: str) -> str:
    """Validate a normalized phone number.

    Args:
        phone_number: Digit string to validate.

    Returns:
        The number unchanged.

    Raises:
        InvalidNumberError: If not exactly 10-15 digits.
    """
    if not isinstance(phone_number, str) or not PHONE_NUMBER_PATTERN.fullmatch(
        phone_number
    ):
        raise InvalidNumberError("Phone number must be 10-15 digits")
    return phone_number


def derive_session_id(phone_number: str) -> str:
    """Derive the session ID for a number.

    Deterministic, so at most one live session exists per number.
    """
    digest = hashlib.sha256(f"devlink-session:{phone_number}".encode()).hexdigest()
    return digest[:SESSION_ID_LENGTH]


def canonical_identity(phone_number: str, domain: str) -> str:
    """Canonical account identity, e.g. "15551234567@s.whatsapp.net"."""
    return f"{phone_number}@{domain}"


def mask_number(phone_number: str) -> str:
    """Mask all but the last four digits for logging."""
    if len(phone_number) <= 4:
        return "*" * len(phone_number)
    return "*" * (len(phone_number) - 4) + phone_number[-4:]
