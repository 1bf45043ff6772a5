from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone

from dateutil.parser import isoparse

FULL_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(?:$|[T ])")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def iso_hours_ago(now: datetime, hours: float) -> str:
    return to_iso(now - timedelta(hours=hours))


def parse_datetime(value: str | int | float | None) -> datetime | None:
    """Strict parse: epoch seconds or an ISO-8601 string with a full calendar date.

    Anything else (a bare day number, a weekday name, "2025-05") is None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    # Dune renders timestamps as "2025-05-01 00:00:00.000 UTC"
    if text.endswith(" UTC"):
        text = text[:-4]
    if not FULL_DATE_RE.match(text):
        return None
    try:
        return isoparse(text)
    except (ValueError, TypeError, OverflowError):
        return None


def utc_day(value: str | int | float | None) -> str | None:
    """Calendar day (YYYY-MM-DD, UTC) for a provider timestamp, or None."""
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).date().isoformat()
