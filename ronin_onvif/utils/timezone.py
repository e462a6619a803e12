"""Time utilities for device clocks and subscription lifetimes.

All timestamps produced by this library are timezone-aware UTC.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?"
    r"(?:(?P<minutes>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def utc_now() -> datetime:
    """Get current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware UTC.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_gmt_offset(offset: timedelta) -> str:
    """Format a UTC offset the way ONVIF devices expect in a TZ string.

    Examples: ``GMT+02:00``, ``GMT-04:30``, ``GMT+00:00``.
    """
    total_minutes = int(offset.total_seconds() // 60)
    sign = "-" if total_minutes < 0 else "+"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"GMT{sign}{hours:02d}:{minutes:02d}"


def parse_duration(value: str) -> Optional[timedelta]:
    """Parse a day/time xsd:duration such as ``PT1M`` or ``PT10S``.

    Returns None for values that are not durations (for example an
    absolute termination time).
    """
    match = _DURATION_RE.match(value.strip())
    if not match or value.strip() in ("P", "PT"):
        return None
    parts = {k: float(v) for k, v in match.groupdict().items() if v}
    return timedelta(**parts)
