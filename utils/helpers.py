"""Shared validation and formatting helpers"""

import re
from datetime import datetime
from typing import Optional
import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

from utils.constants import DATETIME_FORMAT, PACKAGE_LABELS

DEFAULT_PHONE_REGION = "KE"

# Normalized form stored on purchase requests
NORMALIZED_PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")


def validate_username(username: Optional[str]) -> bool:
    """Validate a stored display handle (letters, digits, underscore; max 50)"""
    if not username:
        return False
    username = username.lstrip("@")
    return len(username) <= 50 and USERNAME_PATTERN.match(username) is not None


def normalize_phone_number(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX.

    Accepts 2547XXXXXXXX, +2547XXXXXXXX, 07XXXXXXXX and 7XXXXXXXX (spaces and
    dashes ignored). Returns None when the input is not a valid number.
    """
    if not phone:
        return None

    candidate = re.sub(r"[\s\-()]", "", phone)
    if candidate.startswith("254"):
        candidate = "+" + candidate

    try:
        parsed = phonenumbers.parse(candidate, DEFAULT_PHONE_REGION)
    except NumberParseException:
        return None

    if not phonenumbers.is_valid_number(parsed):
        return None

    # M-Pesa wants the E.164 digits without the leading +
    normalized = phonenumbers.format_number(parsed, PhoneNumberFormat.E164).lstrip("+")
    if not NORMALIZED_PHONE_PATTERN.match(normalized):
        return None
    return normalized


def is_valid_phone_number(phone: Optional[str]) -> bool:
    return normalize_phone_number(phone) is not None


def mask_phone(phone: Optional[str]) -> str:
    """Mask phone number for logs: 254712345678 -> 2547****5678"""
    if not phone:
        return "N/A"
    if len(phone) <= 8:
        return "****"
    return f"{phone[:4]}****{phone[-4:]}"


def format_datetime(dt: datetime) -> str:
    """Format datetime for display"""
    return dt.strftime(DATETIME_FORMAT)


def format_package_name(package: str) -> str:
    return PACKAGE_LABELS.get(package, package.title())


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text with ellipsis"""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
