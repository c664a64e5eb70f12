"""Text, number, date and phone coercion shared by the BMS and EMS parsers."""

from __future__ import annotations

import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

NA_SENTINELS = frozenset({"N/A", "NA", "NONE", "NULL"})

_NON_NUMERIC = re.compile(r"[^\d.\-]")
_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ](\d{2}:?\d{2}:?\d{2})?.*)?$")
_COMPACT_TIME = re.compile(r"^(\d{2}):?(\d{2}):?(\d{2})$")
_TRUE_VALUES = frozenset({"true", "yes", "y", "1", "on", "t"})


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def is_absent(value: Any) -> bool:
    """Empty, whitespace, or a vendor placeholder such as ``N/A``."""
    text = clean_text(value)
    return not text or text.upper() in NA_SENTINELS


def present(value: Any) -> str:
    """Return the stripped text, or "" for sentinel placeholders."""
    return "" if is_absent(value) else clean_text(value)


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse a money/hours figure exactly. Currency symbols and commas are ignored."""
    if isinstance(value, Decimal):
        return value
    text = clean_text(value)
    if not text:
        return default
    negative = text.startswith("(") and text.endswith(")")
    cleaned = _NON_NUMERIC.sub("", text)
    if cleaned.endswith("-"):  # trailing negative, e.g. "45.00-"
        cleaned = "-" + cleaned[:-1]
    if cleaned in ("", "-", ".", "-."):
        return default
    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        return default
    if not parsed.is_finite():
        return default
    return -parsed if negative else parsed


def to_int(value: Any) -> Optional[int]:
    number = to_decimal(value)
    if number is None:
        return None
    try:
        return int(number)
    except (ValueError, OverflowError):
        return None


def to_bool(value: Any) -> bool:
    return clean_text(value).lower() in _TRUE_VALUES


def digits_only(value: Any) -> str:
    return re.sub(r"\D", "", clean_text(value))


def normalize_phone(value: Any) -> str:
    """Format 10-digit (or 1 + 10-digit) North American numbers as ``(NNN) NNN-NNNN``.

    Anything else, e.g. international numbers, is returned unchanged.
    """
    raw = clean_text(value)
    digits = digits_only(raw)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return raw


def parse_date(value: Any) -> Optional[date]:
    """Parse ``YYYYMMDD`` or ``YYYY-MM-DD``.

    Components must round-trip through the calendar: ``20240231`` is absent,
    never March 2nd.
    """
    text = clean_text(value)
    match = _COMPACT_DATE.match(text) or _ISO_DATE.match(text)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups()[:3])
    if not 1900 <= year <= 2100:
        return None
    try:
        parsed = date(year, month, day)
    except ValueError:
        return None
    if (parsed.year, parsed.month, parsed.day) != (year, month, day):
        return None
    return parsed


def parse_datetime(date_value: Any, time_value: Any = None) -> Optional[datetime]:
    """Combine a date with an optional ``HHMMSS`` / ``HH:MM:SS`` time.

    An ISO timestamp such as ``2024-03-15T10:30:00`` carries its own time.
    """
    day = parse_date(date_value)
    if day is None:
        return None
    if time_value is None:
        iso = _ISO_DATE.match(clean_text(date_value))
        time_value = iso.group(4) if iso else None
    match = _COMPACT_TIME.match(clean_text(time_value))
    if not match:
        return datetime.combine(day, time())
    hours, minutes, seconds = (int(part) for part in match.groups())
    try:
        return datetime.combine(day, time(hours, minutes, seconds))
    except ValueError:
        return datetime.combine(day, time())


def contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)
