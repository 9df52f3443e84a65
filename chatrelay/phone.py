"""
Phone number normalization for gateway addressing.

Addresses are stored as "+<digits>" and only get the channel marker
("whatsapp:") when a submission is built for the gateway.
"""

import logging
import re
from typing import Optional

from chatrelay.errors import InvalidPhoneNumber

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_PREFIX = "whatsapp:"
MIN_DIGITS = 10
MAX_DIGITS = 15

_DISALLOWED_CHARS = re.compile(r"[^\d+]")


def strip_channel_prefix(raw: str, prefix: str = DEFAULT_CHANNEL_PREFIX) -> str:
    """Remove a leading channel marker (case-insensitive) and surrounding whitespace."""
    value = (raw or "").strip()
    if value.lower().startswith(prefix.lower()):
        value = value[len(prefix):]
    return value.strip()


def _to_international_digits(cleaned: str, default_country_code: Optional[str]) -> str:
    if cleaned.startswith("+"):
        return cleaned[1:]
    if cleaned.startswith("00"):
        return cleaned[2:]

    if not default_country_code:
        raise InvalidPhoneNumber(
            "Phone number has no country code and no default country is configured"
        )

    country = default_country_code.lstrip("+")
    if cleaned.startswith(country) and len(cleaned) > MIN_DIGITS:
        return cleaned
    if cleaned.startswith("0"):
        cleaned = cleaned[1:]
    return country + cleaned


def to_storage_address(
    raw: str,
    default_country_code: Optional[str] = None,
    prefix: str = DEFAULT_CHANNEL_PREFIX,
) -> str:
    """
    Normalize a phone string to its stored form: '+' followed by 10-15 digits.

    Raises:
        InvalidPhoneNumber: if the input cannot be normalized
    """
    if raw is None or not str(raw).strip():
        raise InvalidPhoneNumber("Phone number is required")

    value = strip_channel_prefix(str(raw), prefix)
    cleaned = _DISALLOWED_CHARS.sub("", value)

    # '+' is only meaningful as the first character
    if "+" in cleaned[1:]:
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r}")

    digits = _to_international_digits(cleaned, default_country_code)

    if not digits.isdigit() or not (MIN_DIGITS <= len(digits) <= MAX_DIGITS):
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r}")

    return f"+{digits}"


def normalize_phone(
    raw: str,
    default_country_code: Optional[str] = None,
    prefix: str = DEFAULT_CHANNEL_PREFIX,
) -> str:
    """
    Convert an arbitrary phone string to the gateway's submission address.

    Re-normalizing the output returns it unchanged.

    Args:
        raw: Phone input in any common format, with or without channel marker
        default_country_code: Country code applied to numbers lacking '+'
        prefix: Channel marker required by the gateway

    Returns:
        Address such as "whatsapp:+15551234567"

    Raises:
        InvalidPhoneNumber: if the input cannot be normalized
    """
    address = to_storage_address(raw, default_country_code, prefix)
    logger.debug(f"Normalized phone {raw!r} -> {address}")
    return f"{prefix}{address}"
