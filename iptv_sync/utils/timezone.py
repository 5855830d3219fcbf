"""
Date and Time utilities

This module handles all date/time conversions and parsing.
Centralizes all date parsing logic to maintain consistency across the application.
"""
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class DateFormatError(ValueError):
    """Raised when date format is invalid"""
    pass


def utc_now() -> datetime:
    """Default clock: current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime to aware UTC.

    SQLite drops tzinfo on round trip, so naive values read back from the
    database are assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage_string(value: datetime) -> str:
    """Render a datetime as the ISO8601 UTC string used in programme rows."""
    return ensure_utc(value).isoformat()


def _normalize_iso8601_string(date_str: str) -> str:
    """Normalize ISO8601 string by replacing 'Z' with '+00:00'"""
    return date_str.replace('Z', '+00:00') if date_str.endswith('Z') else date_str


def parse_iso8601_to_utc(date_str: str) -> datetime:
    """
    Parse ISO8601 date string and convert to UTC datetime

    Args:
        date_str: ISO8601 datetime string (e.g., '2025-10-09T00:00:00Z' or '2025-10-09T00:00:00+01:00')

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        DateFormatError: If the date string format is invalid
    """
    try:
        normalized = _normalize_iso8601_string(date_str)
        dt = datetime.fromisoformat(normalized)
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (ValueError, AttributeError) as e:
        raise DateFormatError(f"Invalid ISO8601 datetime format: '{date_str}'") from e


def parse_xmltv_time(time_str: str) -> datetime:
    """
    Convert XMLTV time format to a UTC datetime

    Args:
        time_str: XMLTV time like '20080715003000 -0600'. Seconds and the
            offset are optional.

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        DateFormatError: If the value cannot be parsed
    """
    parts = time_str.strip().split()
    if not parts:
        raise DateFormatError(f"Empty XMLTV time: '{time_str}'")

    time_part = parts[0]
    tz_part = parts[1] if len(parts) > 1 else '+0000'

    # Some grabbers glue the offset to the timestamp: 20080715003000+0200
    if len(parts) == 1 and len(time_part) > 14 and time_part[14] in '+-':
        time_part, tz_part = time_part[:14], time_part[14:]

    try:
        if len(time_part) == 12:
            dt = datetime.strptime(time_part, '%Y%m%d%H%M')
        else:
            dt = datetime.strptime(time_part[:14], '%Y%m%d%H%M%S')

        tz_sign = 1 if tz_part[0] == '+' else -1
        tz_hours = int(tz_part[1:3])
        tz_mins = int(tz_part[3:5])
    except (ValueError, IndexError) as e:
        raise DateFormatError(f"Invalid XMLTV time: '{time_str}'") from e

    tz_offset_minutes = tz_sign * (tz_hours * 60 + tz_mins)
    dt_utc = dt - timedelta(minutes=tz_offset_minutes)

    return dt_utc.replace(tzinfo=timezone.utc)
