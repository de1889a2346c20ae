"""
Phone number normalization
==========================
Every store lookup and every outbound send goes through normalize(), which
returns canonical E.164 (+<country><subscriber>).

Accepted shapes (Nigeria as the default country):
- 08012345678      local, leading trunk zero
- 8012345678       ten-digit subscriber number
- 2348012345678    international without plus
- +2348012345678   canonical
"""

import re

from miimii.errors import InvalidPhoneNumber

DEFAULT_COUNTRY_CODE = "234"

_SEPARATORS = re.compile(r"[\s\-().]")
_DIGITS = re.compile(r"^\d+$")


def normalize(raw: str, default_country: str = DEFAULT_COUNTRY_CODE) -> str:
    if raw is None:
        raise InvalidPhoneNumber("Phone number is required")

    text = _SEPARATORS.sub("", str(raw))
    if not text:
        raise InvalidPhoneNumber("Phone number is required")

    has_plus = text.startswith("+")
    digits = text[1:] if has_plus else text

    if "+" in digits or not _DIGITS.match(digits):
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r}")

    if not has_plus:
        national = len(digits) == 11 and digits.startswith("0")
        if national:
            digits = default_country + digits[1:]
        elif len(digits) == 10 and not digits.startswith("0"):
            digits = default_country + digits

    if digits.startswith("0"):
        raise InvalidPhoneNumber(f"Country code cannot start with 0: {raw!r}")
    if not 5 <= len(digits) <= 15:
        raise InvalidPhoneNumber(f"Phone number must have 5 to 15 digits: {raw!r}")

    return "+" + digits


def to_platform(phone: str) -> str:
    """WhatsApp addresses recipients by digits only."""
    return normalize(phone).lstrip("+")


def to_local(phone: str, default_country: str = DEFAULT_COUNTRY_CODE) -> str:
    """08012345678 form, which the VAS provider expects for Nigerian lines."""
    canonical = normalize(phone, default_country)
    if canonical.startswith("+" + default_country):
        return "0" + canonical[len(default_country) + 1:]
    return canonical


def mask(phone: str) -> str:
    if not phone:
        return "***"
    return "***" + str(phone)[-4:]
