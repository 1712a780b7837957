"""Timestamp helpers.

Observation timestamps are stored as ISO-8601 strings. Everything that compares
them goes through ``parse_timestamp`` so naive and ``Z``-suffixed values from
older files compare correctly against timezone-aware cutoffs.

Human-friendly references accepted by ``parse_time_reference``:
- ISO format: "2025-01-15", "2025-01-15T14:30:00Z"
- Relative: "7 days ago", "2 weeks ago", "1 month ago"
- Named: "yesterday", "today", "last week", "last month", "last year"
"""

import re
from datetime import datetime, timedelta, timezone

from dateutil import parser as dateparser
from dateutil.relativedelta import relativedelta

_AGO_PATTERN = re.compile(r"(\d+)\s*(second|minute|hour|day|week|month|year)s?\s*ago")

_NAMED_OFFSETS = {
    "last week": relativedelta(weeks=1),
    "last month": relativedelta(months=1),
    "last year": relativedelta(years=1),
}

_RELATIVE_UNITS = (
    ("year", 365 * 86400),
    ("month", 30 * 86400),
    ("week", 7 * 86400),
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp into an aware datetime.

    Raises:
        ValueError: If the value is not ISO-8601.
    """
    return ensure_utc(dateparser.isoparse(value))


def parse_time_reference(ref: str, now: datetime | None = None) -> datetime:
    """Parse human-friendly time references.

    Args:
        ref: Time reference string
        now: Reference point for relative times (default: utcnow)

    Returns:
        Parsed datetime (timezone-aware, UTC when no zone is given)

    Raises:
        ValueError: If the reference cannot be parsed
    """
    if now is None:
        now = datetime.now(timezone.utc)

    ref = ref.strip().lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if ref == "today":
        return midnight
    if ref == "yesterday":
        return midnight - timedelta(days=1)
    if ref in _NAMED_OFFSETS:
        return now - _NAMED_OFFSETS[ref]

    ago_match = _AGO_PATTERN.fullmatch(ref)
    if ago_match:
        amount = int(ago_match.group(1))
        unit = ago_match.group(2)
        return now - relativedelta(**{f"{unit}s": amount})

    try:
        parsed = dateparser.parse(ref)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Cannot parse time reference: {ref}") from e
    if parsed is None:
        raise ValueError(f"Cannot parse time reference: {ref}")
    return ensure_utc(parsed)


def format_relative_time(dt: datetime, now: datetime | None = None) -> str:
    """Format a datetime as "3 days ago" style text."""
    if now is None:
        now = datetime.now(timezone.utc)

    seconds = int((now - ensure_utc(dt)).total_seconds())
    if seconds < 0:
        return "in the future"

    for unit, unit_seconds in _RELATIVE_UNITS:
        if seconds >= unit_seconds:
            count = seconds // unit_seconds
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return f"{seconds} seconds ago"
