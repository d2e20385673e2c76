"""Sender address normalisation and contact hints extracted from free text."""

from __future__ import annotations

import re
from typing import NamedTuple

import phonenumbers

from ..errors import InvalidAddressError

PLACEHOLDER_NAME = "Unknown Contact"

_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_PHONE_RE = re.compile(r"(?:\+?1[\s.-]*)?(?:\(\s*\d{3}\s*\)|\d{3})[\s.-]*\d{3}[\s.-]*\d{4}")
_NAME_RE = re.compile(
    r"\b(?:my name is|this is|i am|i'm)\s+([A-Za-z]+(?:\s+[A-Za-z]+){0,2})\b", re.IGNORECASE
)
_MESSENGER_FALLBACK_RE = re.compile(r"^messenger\s+\d+$", re.IGNORECASE)
_NAMED_EMAIL_RE = re.compile(r"^(.*)<([^>]+)>$")


class PhoneNumber(NamedTuple):
    raw: str
    e164: str


class EmailAddress(NamedTuple):
    email: str
    name: str | None


def normalize_phone(value: str, region: str = "US") -> PhoneNumber:
    """Parse ``value`` into E.164, assuming ``region`` for national numbers.

    Raises:
        InvalidAddressError: If the value is not a plausible phone number.
    """

    raw = (value or "").strip()
    try:
        parsed = phonenumbers.parse(raw, region)
    except phonenumbers.NumberParseException as exc:
        raise InvalidAddressError(f"Cannot parse phone number '{raw}'") from exc
    if not phonenumbers.is_possible_number(parsed):
        raise InvalidAddressError(f"Phone number '{raw}' is not a possible number")
    return PhoneNumber(raw=raw, e164=phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164))


def parse_email_address(value: str) -> EmailAddress:
    """Split ``"Name" <addr>`` into a lowercased address and optional name."""

    trimmed = (value or "").strip()
    match = _NAMED_EMAIL_RE.match(trimmed)
    if match:
        name = match.group(1).strip().strip('"').strip()
        return EmailAddress(email=match.group(2).strip().lower(), name=name or None)
    return EmailAddress(email=trimmed.lower(), name=None)


def extract_email(text: str) -> str | None:
    match = _EMAIL_RE.search(text or "")
    return match.group(0).strip().lower() if match else None


def extract_phone(text: str, region: str = "US") -> PhoneNumber | None:
    """Return the first phone-looking substring of ``text`` that normalises."""

    for match in _PHONE_RE.finditer(text or ""):
        try:
            return normalize_phone(match.group(0), region)
        except InvalidAddressError:
            continue
    return None


def extract_name(text: str) -> str | None:
    """Pick a self-introduction such as "my name is Jane Doe" out of ``text``."""

    normalized = " ".join((text or "").split())
    if not normalized:
        return None
    match = _NAME_RE.search(normalized)
    if not match:
        return None
    return match.group(1).strip() or None


def is_meaningful_name(value: str | None) -> bool:
    """``False`` for blanks and the placeholders used for anonymous senders."""

    trimmed = (value or "").strip()
    if not trimmed:
        return False
    if trimmed.lower() == PLACEHOLDER_NAME.lower():
        return False
    return not _MESSENGER_FALLBACK_RE.match(trimmed)


def split_name(full_name: str | None) -> tuple[str, str]:
    cleaned = (full_name or "").strip() or PLACEHOLDER_NAME
    parts = cleaned.split()
    first = parts[0]
    last = " ".join(parts[1:]) or "Contact"
    return first, last


__all__ = [
    "EmailAddress",
    "PLACEHOLDER_NAME",
    "PhoneNumber",
    "extract_email",
    "extract_name",
    "extract_phone",
    "is_meaningful_name",
    "normalize_phone",
    "parse_email_address",
    "split_name",
]
