"""Recipient canonicalization — one recipient, one queue key.

Phone numbers are reduced to digits with the country code in front, and
the long mobile form (an extra ``9`` after the area code) is collapsed to
the short form the chat transport expects::

    "+55 (11) 98888-7777"  ->  "551188887777"
    "11 8888-7777"         ->  "551188887777"
    "551188887777"         ->  "551188887777"

Anything that ends up shorter than ``MIN_PHONE_DIGITS`` is rejected with
``InvalidRecipient`` so the caller can refuse the enqueue.
"""

import re

from outbound.config import get_settings
from outbound.errors import InvalidRecipient

MIN_PHONE_DIGITS = 10
AREA_CODE_DIGITS = 2
SUBSCRIBER_DIGITS = 8
MOBILE_INDICATOR = "9"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DESTINATION_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


def _short_length(country_code: str) -> int:
    return len(country_code) + AREA_CODE_DIGITS + SUBSCRIBER_DIGITS


def normalize_phone(raw: str, country_code: str | None = None) -> str:
    """Return the canonical digits-only key for a phone number."""
    country_code = country_code or get_settings().country_code
    if not raw:
        raise InvalidRecipient(raw, "Empty phone number")

    digits = re.sub(r"\D", "", str(raw))

    if digits.startswith("00"):
        digits = digits[2:]

    # Keep the rightmost digits so a doubled prefix cannot grow the key
    long_length = _short_length(country_code) + 1
    if len(digits) > long_length:
        digits = digits[-long_length:]

    if not digits.startswith(country_code):
        digits = country_code + digits

    indicator_at = len(country_code) + AREA_CODE_DIGITS
    if len(digits) == long_length and digits[indicator_at] == MOBILE_INDICATOR:
        digits = digits[:indicator_at] + digits[indicator_at + 1 :]

    if len(digits) < MIN_PHONE_DIGITS:
        raise InvalidRecipient(raw, "Too few digits in phone number")
    if len(digits) > long_length:
        raise InvalidRecipient(raw, "Too many digits in phone number")

    return digits


def phone_variants(key: str, country_code: str | None = None) -> list[str]:
    """Return the addressable forms of a canonical phone key, short form first.

    The transport sometimes only knows a contact by its long mobile form;
    senders fall back to the second variant when the first is rejected.
    """
    country_code = country_code or get_settings().country_code
    canonical = normalize_phone(key, country_code)
    indicator_at = len(country_code) + AREA_CODE_DIGITS

    if len(canonical) == _short_length(country_code):
        long_form = canonical[:indicator_at] + MOBILE_INDICATOR + canonical[indicator_at:]
        return [canonical, long_form]
    return [canonical]


def normalize_email(raw: str) -> str:
    address = (raw or "").strip().lower()
    if not _EMAIL_RE.match(address):
        raise InvalidRecipient(raw, "Invalid email address")
    return address


def normalize_destination(raw: str) -> str:
    """Webhook destinations are addressed by a slug, e.g. ``ops-alerts``."""
    slug = re.sub(r"\s+", "-", (raw or "").strip().lower())
    if not _DESTINATION_RE.match(slug):
        raise InvalidRecipient(raw, "Invalid webhook destination")
    return slug


def normalize_recipient(raw: str, channel: str) -> str:
    """Canonicalize a recipient for the given channel."""
    from outbound.queue.message import Channel

    if channel == Channel.CHAT_API.value:
        return normalize_phone(raw)
    if channel == Channel.EMAIL.value:
        return normalize_email(raw)
    if channel == Channel.WEBHOOK.value:
        return normalize_destination(raw)
    raise InvalidRecipient(raw, f"Unknown channel {channel!r}")
