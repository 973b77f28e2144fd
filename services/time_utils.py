"""
Time helpers shared by the scheduling services.

Instants are stored as naive UTC datetimes; times of day ("HH:MM") are
interpreted in the patient's timezone.
"""

import re
from datetime import datetime, date, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_hhmm(value: str) -> time:
    """Parse an "HH:MM" string, raising ValueError when malformed."""
    if not isinstance(value, str) or not HHMM_PATTERN.match(value.strip()):
        raise ValueError(f"Invalid time of day (expected HH:MM): {value!r}")
    hour, minute = value.strip().split(":")
    return time(int(hour), int(minute))


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve a timezone name, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_to_utc(day: date, at: time, tz_name: Optional[str]) -> datetime:
    """Combine a local date and time of day into a naive UTC instant."""
    local_dt = datetime.combine(day, at).replace(tzinfo=get_zone(tz_name))
    return local_dt.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(instant: datetime, tz_name: Optional[str]) -> datetime:
    """Convert a naive UTC instant into an aware local datetime."""
    return instant.replace(tzinfo=timezone.utc).astimezone(get_zone(tz_name))


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive (assumed UTC) datetime to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def is_time_in_range(value: str, start: str, end: str) -> bool:
    """
    Check whether "HH:MM" lies inside [start, end].

    Ranges with start > end wrap midnight (e.g. 23:00 to 02:00).
    """
    if start > end:
        return value >= start or value <= end
    return start <= value <= end
