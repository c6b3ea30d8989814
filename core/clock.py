"""Time helpers: quiet windows, US market hours, staleness."""

import time
from dataclasses import dataclass
from datetime import datetime, time as dtime, timezone
from typing import Optional, Union

Timestamp = Union[float, datetime]

MARKET_OPEN_UTC = dtime(14, 30)
MARKET_CLOSE_UTC = dtime(21, 0)


def to_utc_datetime(value: Optional[Timestamp] = None) -> datetime:
    """Normalize epoch seconds / naive / aware datetimes to aware UTC."""
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def parse_hhmm(value: str) -> dtime:
    """Parse 'HH:MM' into a time object. Raises ValueError on bad input."""
    try:
        hours_str, minutes_str = value.strip().split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError):
        raise ValueError(f"Expected HH:MM, got {value!r}") from None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Out of range time {value!r}")
    return dtime(hours, minutes)


@dataclass(frozen=True)
class QuietWindow:
    """
    Daily UTC window during which triggering actions are suppressed.

    start == end means an empty window. A window whose end is before its
    start wraps past midnight (e.g. 23:00-01:00).
    """
    start: dtime
    end: dtime

    @classmethod
    def from_strings(cls, start: str, end: str) -> "QuietWindow":
        return cls(parse_hhmm(start), parse_hhmm(end))

    def contains(self, now: Optional[Timestamp] = None) -> bool:
        current = to_utc_datetime(now).time().replace(second=0, microsecond=0)
        if self.start == self.end:
            return False
        if self.start < self.end:
            return self.start <= current < self.end
        return current >= self.start or current < self.end

    def __str__(self) -> str:
        return f"{self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')} UTC"


def is_us_market_open(now: Optional[Timestamp] = None) -> bool:
    """
    Approximate NYSE regular session check in UTC.

    Uses 14:30-21:00 UTC on weekdays, which covers both standard and
    daylight time without a timezone database. Holidays are not handled.
    """
    current = to_utc_datetime(now)
    if current.weekday() >= 5:
        return False
    return MARKET_OPEN_UTC <= current.time() <= MARKET_CLOSE_UTC


def is_stale(timestamp: Optional[float], max_age_seconds: float, now: Optional[float] = None) -> bool:
    """True if `timestamp` (epoch seconds) is missing or older than max_age_seconds."""
    if timestamp is None:
        return True
    current = time.time() if now is None else now
    return current - float(timestamp) > max_age_seconds


__all__ = [
    "QuietWindow",
    "is_stale",
    "is_us_market_open",
    "parse_hhmm",
    "to_utc_datetime",
]
