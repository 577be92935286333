# shared/time.py
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TZ_NAME = "Europe/London"


# === Time Zone Lookup ===

def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name. Raises ValueError for unknown names."""
    if not tz_name:
        raise ValueError("timezone name is required")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown timezone: {tz_name}") from e


def is_valid_timezone(tz_name: Optional[str]) -> bool:
    try:
        get_zone(tz_name)
        return True
    except ValueError:
        return False


def ensure_aware_utc(dt: datetime) -> datetime:
    """Normalize any datetime to aware UTC (naive => assume UTC)."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# === Time Parsing ===

def parse_datetime(value: str) -> datetime:
    """Parse an ISO-8601 string. Supports trailing 'Z'. Returns a datetime; no timezone normalization here."""
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


def parse_time_of_day(value: str) -> time:
    """'HH:MM' or 'HH:MM:SS' -> time."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


# === Clock ===

class Clock:
    """
    The only source of "current time" for the reminder core.

    Everything that needs now() or a zone conversion takes a Clock so tests
    can inject a fixed instant.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def offset_minutes(self, tz_name: str, instant: datetime) -> int:
        """UTC offset of `tz_name` at `instant`, in minutes."""
        local = ensure_aware_utc(instant).astimezone(get_zone(tz_name))
        offset = local.utcoffset() or timedelta(0)
        return int(offset.total_seconds() // 60)

    def local_datetime(self, instant: datetime, tz_name: str) -> Tuple[date, time]:
        """Split `instant` into the calendar date and wall time it has in `tz_name`."""
        local = ensure_aware_utc(instant).astimezone(get_zone(tz_name))
        return local.date(), local.time().replace(tzinfo=None)

    def to_instant(self, day: date, tod: Optional[time], tz_name: str) -> datetime:
        """Aware UTC instant for wall time `tod` (midnight if None) on `day` in `tz_name`."""
        wall = datetime.combine(day, tod or time(0, 0))
        return wall.replace(tzinfo=get_zone(tz_name)).astimezone(timezone.utc)

    def today(self, tz_name: str) -> date:
        return self.local_datetime(self.now(), tz_name)[0]


class FixedClock(Clock):
    """Clock frozen at a given instant; advance() moves it forward."""

    def __init__(self, instant: datetime):
        self._now = ensure_aware_utc(instant)

    def now(self) -> datetime:
        return self._now

    def set(self, instant: datetime) -> None:
        self._now = ensure_aware_utc(instant)

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now


system_clock = Clock()


# === Conversions ===

def to_user_timezone(dt: str | datetime, tz_name: str | None = DEFAULT_TZ_NAME) -> datetime:
    # Accept ISO string as well
    if isinstance(dt, str):
        dt = parse_datetime(dt)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    try:
        tz = ZoneInfo(tz_name) if tz_name else timezone.utc
    except ZoneInfoNotFoundError:
        logger.warning("Timezone %s not found. Using UTC fallback.", tz_name)
        tz = timezone.utc

    return dt.astimezone(tz)


def format_local(instant: datetime, tz_name: str) -> str:
    """'YYYY-MM-DDTHH:MM' wall time of `instant` in `tz_name`."""
    return to_user_timezone(instant, tz_name).strftime("%Y-%m-%dT%H:%M")


# === Constants ===

ONE_DAY = timedelta(days=1)
MINUTES_PER_DAY = 24 * 60
