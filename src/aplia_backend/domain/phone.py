"""
aplia_backend.domain.phone

WhatsApp phone number helpers.

Responsibilities:
- Normalize numbers to digits and pick the owner number out of gateway payloads.
- Render Brazilian numbers for display and for automation payloads.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

_NON_DIGITS = re.compile(r"\D")
_JID_PREFIX = re.compile(r"^(\d+)@")


def normalize_phone_number(phone_number: str) -> str:
    return _NON_DIGITS.sub("", phone_number)


def _jid_digits(jid: Any) -> str | None:
    if not isinstance(jid, str):
        return None
    match = _JID_PREFIX.match(jid)
    return match.group(1) if match else None


def extract_phone_number(instance: Mapping[str, Any] | None) -> str | None:
    """
    Gateway payloads expose the owner number in several fields; prefer them in
    this order: number, wid, ownerJid, owner.
    """

    if not instance:
        return None

    number = instance.get("number")
    if number:
        return normalize_phone_number(str(number))

    for field in ("wid", "ownerJid"):
        digits = _jid_digits(instance.get(field))
        if digits:
            return normalize_phone_number(digits)

    owner = instance.get("owner")
    if owner:
        return normalize_phone_number(str(owner))

    return None


def format_phone_number(phone_number: str | None) -> str:
    if not phone_number:
        return "-"

    digits = normalize_phone_number(phone_number)

    if digits.startswith("55"):
        ddd = digits[2:4]
        local = digits[4:]
        if len(digits) == 13:
            return f"+55({ddd}){local[:5]}-{local[5:]}"
        if len(digits) == 12:
            # Landline-length local part: mobile numbers gained a leading 9.
            if len(local) == 8:
                return f"+55({ddd})9{local[:4]}-{local[4:]}"
            return f"+55({ddd}){local[:5]}-{local[5:]}"
        if len(digits) == 11:
            return f"+55({ddd})9{local[:4]}-{local[4:]}"
        if len(digits) == 10:
            return f"+55({ddd})9{local[:3]}-{local[3:]}"

    return f"+{digits}"


def is_valid_phone_number(phone_number: str) -> bool:
    return 10 <= len(normalize_phone_number(phone_number)) <= 15


def to_e164_br(phone_number: str | None) -> str:
    digits = normalize_phone_number(phone_number or "")
    if not digits:
        return ""
    if digits.startswith("55"):
        return f"+{digits}"
    return f"+55{digits}"
