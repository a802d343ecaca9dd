from __future__ import annotations

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D+")


def normalize(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def normalize_phone(value: Optional[str]) -> str:
    digits = _NON_DIGITS.sub("", value or "")
    if digits.startswith("00"):
        digits = digits[2:]
    return digits


def normalize_email(value: Optional[str]) -> str:
    return normalize(value).replace(" ", "")


class RecipientDeduper:
    """Remembers the addresses seen so far within one campaign."""

    def __init__(self) -> None:
        self._phones: set[str] = set()
        self._emails: set[str] = set()

    def seen(self, *, phone: Optional[str], email: Optional[str]) -> bool:
        phone_key = normalize_phone(phone)
        email_key = normalize_email(email)
        duplicate = bool(
            (phone_key and phone_key in self._phones) or (email_key and email_key in self._emails)
        )
        if phone_key:
            self._phones.add(phone_key)
        if email_key:
            self._emails.add(email_key)
        return duplicate
