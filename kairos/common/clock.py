"""
Clock and timezone helpers.

All instants handled by Kairos are timezone-aware UTC datetimes. Local
wall-clock values (hour, weekday, date) are always derived by converting an
absolute instant into the user's zone, never by adding offsets by hand, so
DST transitions are handled by zoneinfo.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from kairos.common.errors import InvalidTimezone

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")

WEEKDAY_NAMES = (
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
)


def utcnow() -> datetime:
    """Current instant as an aware UTC datetime. Default clock for the loops."""
    return datetime.now(timezone.utc)


def resolve_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        InvalidTimezone: if the name is empty or unknown.
    """
    if not name or not isinstance(name, str):
        raise InvalidTimezone(str(name))
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise InvalidTimezone(name) from e


def safe_timezone(name: str, log: Optional[logging.Logger] = None) -> ZoneInfo:
    """Resolve a timezone, falling back to UTC with a warning."""
    try:
        return resolve_timezone(name)
    except InvalidTimezone:
        (log or logger).warning(f"Invalid timezone {name!r}, falling back to UTC")
        return UTC


def ensure_aware(instant: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


def to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    return ensure_aware(instant).astimezone(tz)


def local_hour(instant: datetime, tz: ZoneInfo) -> int:
    return to_local(instant, tz).hour


def local_weekday(instant: datetime, tz: ZoneInfo) -> int:
    """Weekday in the user's zone, Monday == 0."""
    return to_local(instant, tz).weekday()


def weekday_name(instant: datetime, tz: ZoneInfo) -> str:
    return WEEKDAY_NAMES[local_weekday(instant, tz)]


def local_date_str(instant: datetime, tz: ZoneInfo) -> str:
    """Calendar date (YYYY-MM-DD) in the user's zone."""
    return to_local(instant, tz).strftime("%Y-%m-%d")


def local_time_str(instant: datetime, tz: ZoneInfo) -> str:
    """Wall-clock time (HH:MM, 24h) in the user's zone."""
    return to_local(instant, tz).strftime("%H:%M")


def is_within_window(hour: int, start: int, end: int) -> bool:
    """
    Half-open hour window membership, [start, end).

    A window with start > end wraps past midnight (22 -> 8 covers 22..23 and
    0..7). A window with start == end is empty.
    """
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


def is_within_quiet_hours(hour: int, quiet_start: int, quiet_end: int) -> bool:
    """Check if an hour falls inside the configured quiet hours."""
    return is_within_window(hour, quiet_start, quiet_end)


def minutes_since(instant: Optional[datetime], now: datetime) -> Optional[int]:
    if instant is None:
        return None
    return int((ensure_aware(now) - ensure_aware(instant)).total_seconds() // 60)


def hours_since(instant: Optional[datetime], now: datetime) -> Optional[int]:
    if instant is None:
        return None
    return int((ensure_aware(now) - ensure_aware(instant)).total_seconds() // 3600)


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime (None passes through).

    Raises:
        ValueError: if the string is not a valid ISO-8601 timestamp.
    """
    if value is None or value == "":
        return None
    return ensure_aware(datetime.fromisoformat(value)).astimezone(timezone.utc)


def format_instant(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).isoformat()
