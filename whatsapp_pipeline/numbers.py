"""
Phone number normalization for the WhatsApp channel.

Twilio addresses WhatsApp endpoints as ``whatsapp:<E.164>``; everything we
store and look up uses the bare E.164 form.
"""

import re

WHATSAPP_PREFIX = "whatsapp:"

_PREFIX_RE = re.compile(r"^whatsapp:", re.IGNORECASE)
_E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


def _strip_number(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise TypeError("Phone number is empty or whitespace")
    number = _PREFIX_RE.sub("", value.strip()).strip()
    if not _E164_RE.match(number):
        raise ValueError(f"Phone number is not in E.164 format: {number!r}")
    return number


def normalize_whatsapp_number(value: str) -> str:
    """
    Strip the channel wrapper and return the bare E.164 number.

    >>> normalize_whatsapp_number("WhatsApp:+14155551234")
    '+14155551234'
    """
    return _strip_number(value)


def format_whatsapp_number(value: str) -> str:
    """Return the channel wire format, ``whatsapp:<E.164>``."""
    return f"{WHATSAPP_PREFIX}{_strip_number(value)}"


def is_valid_whatsapp_number(value: str) -> bool:
    try:
        _strip_number(value)
    except (TypeError, ValueError):
        return False
    return True
