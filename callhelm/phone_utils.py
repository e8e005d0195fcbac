"""
Phone-number normalisation (E.164), SIP endpoint helpers and display formatting.

Normalisation follows the dialler's own rules (strip separators, assume a
10-digit number is domestic NANP) and finishes with a strict E.164 check.
Display formatting uses the `phonenumbers` library.
"""

from __future__ import annotations

import re
from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
_NON_DIGITS = re.compile(r"\D")

DEFAULT_COUNTRY_CODE = "1"


def normalize_phone(raw: str, country_code: str = DEFAULT_COUNTRY_CODE) -> Optional[str]:
    """
    Normalise a free-form phone number to E.164.

    * 10 digits are treated as domestic and get ``+<country_code>``
    * 11 digits starting with the country code get a ``+``
    * other ``+``-prefixed input passes through as typed
    * anything else gets a bare ``+`` in front of its digits

    Returns the E.164 string, or None when the result fails validation.
    """
    cleaned = (raw or "").strip()
    if not cleaned:
        return None

    digits = _NON_DIGITS.sub("", cleaned)
    if not digits:
        return None

    if len(digits) == 10:
        candidate = f"+{country_code}{digits}"
    elif len(digits) == 11 and digits.startswith(country_code):
        candidate = f"+{digits}"
    elif cleaned.startswith("+"):
        candidate = cleaned
    else:
        candidate = f"+{digits}"

    if not is_e164(candidate):
        return None
    return candidate


def is_e164(value: str) -> bool:
    return bool(E164_PATTERN.match(value or ""))


def is_sip_uri(value: str) -> bool:
    return (value or "").lower().startswith(("sip:", "sips:"))


def sip_uri_for_extension(extension: str, domain: str) -> str:
    """Synthesise the SIP URI a 3CX extension is reachable on."""
    ext = (extension or "").strip()
    host = (domain or "").strip().rstrip("/")
    if not ext or not host:
        raise ValueError("Both a 3CX extension and SIP domain are required")
    return f"sip:{ext}@{host}"


def format_for_display(e164: str) -> str:
    """Format an E.164 number in its national format, falling back to the input."""
    try:
        parsed = phonenumbers.parse(e164, None)
        return phonenumbers.format_number(parsed, PhoneNumberFormat.NATIONAL)
    except NumberParseException:
        return e164
