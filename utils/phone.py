"""Phone number normalisation for WhatsApp addresses."""
from __future__ import annotations

import re


def normalize_phone(phone: str, default_country_code: str = "234") -> str:
    """
    Normalise to ``+<country><number>``.

    Keeps digits and a leading ``+``. A national number with a leading 0
    gets the default country code in place of the 0; a bare digit string
    that does not already start with the country code gets it prefixed.
    """
    cc = default_country_code.lstrip("+")
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if not cleaned:
        return ""
    if cleaned.startswith("+"):
        return "+" + cleaned[1:].replace("+", "")
    cleaned = cleaned.replace("+", "")
    if cleaned.startswith("00"):
        return "+" + cleaned[2:]
    if cleaned.startswith(cc):
        return "+" + cleaned
    if cleaned.startswith("0"):
        return "+" + cc + cleaned[1:]
    return "+" + cc + cleaned


def to_wa_id(phone: str) -> str:
    """Digits only, as the Cloud API expects in the ``to`` field."""
    return re.sub(r"[^\d]", "", phone or "")
