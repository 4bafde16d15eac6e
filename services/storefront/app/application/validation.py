"""Sanitizing and validation of checkout customer data."""

import html
import re
from typing import Optional

from .errors import ErrorKind, ValidationError

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")
_SCRIPT_RE = re.compile(r"javascript:|on\w+\s*=", re.IGNORECASE)

EMAIL_RE = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*\.[a-z]{2,}$")
PHONE_RE = re.compile(r"^[6-9][0-9]{9}$")
PINCODE_RE = re.compile(r"^[1-9][0-9]{5}$")

MAX_EMAIL_LENGTH = 255
MAX_LINE_QUANTITY = 100


def sanitize_text(value: Optional[str]) -> str:
    """Strip markup and control characters, collapse whitespace, trim."""
    if not isinstance(value, str):
        return ""
    cleaned = html.unescape(value)
    cleaned = _TAG_RE.sub("", cleaned)
    cleaned = _SCRIPT_RE.sub("", cleaned)
    cleaned = _CONTROL_RE.sub(" ", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def validate_email(email: str) -> str:
    normalized = sanitize_text(email).lower()
    if not normalized or len(normalized) > MAX_EMAIL_LENGTH or not EMAIL_RE.match(normalized):
        raise ValidationError(ErrorKind.INVALID_EMAIL, "Invalid email format")
    return normalized


def normalize_phone(phone: str) -> Optional[str]:
    """Return the 10-digit national number, or None if it can't be one."""
    digits = re.sub(r"[\s\-().]", "", sanitize_text(phone))
    if digits.startswith("+"):
        digits = digits[1:]
    if not digits.isdigit():
        return None
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]
    return digits if len(digits) == 10 else None


def validate_phone(phone: str) -> str:
    normalized = normalize_phone(phone)
    if normalized is None or not PHONE_RE.match(normalized):
        raise ValidationError(
            ErrorKind.INVALID_PHONE,
            "Invalid phone number. Must be 10 digits starting with 6-9",
        )
    return normalized


def validate_pincode(pincode: str) -> str:
    normalized = sanitize_text(pincode)
    if not PINCODE_RE.match(normalized):
        raise ValidationError(
            ErrorKind.INVALID_PINCODE,
            "Invalid pincode. Must be 6 digits not starting with 0",
        )
    return normalized


def validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or not 0 < quantity <= MAX_LINE_QUANTITY:
        raise ValidationError(
            ErrorKind.INVALID_QUANTITY,
            f"Quantity must be a whole number between 1 and {MAX_LINE_QUANTITY}",
        )
    return quantity
