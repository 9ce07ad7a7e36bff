"""
Time arithmetic for the hourly booking grid.

All datetimes handled by the engine are timezone-aware and normalized to UTC.
The business timezone is only used to decide calendar days (horizon start,
same-day cancellation).
"""

import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from errors import ValidationError


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from the database, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_to_hour(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def hours_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 3600)


def require_whole_hours(value, field: str = "hours", minimum: int = 1) -> int:
    # bool is an int subclass; reject it along with floats and strings
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be a whole number of hours")
    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    return value


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    @classmethod
    def of_hours(cls, start: datetime, hours: int) -> "TimeWindow":
        return cls(start, start + timedelta(hours=hours))

    @property
    def hours(self) -> int:
        return hours_between(self.start, self.end)

    def overlaps(self, other: "TimeWindow") -> bool:
        # any overlap of half-open ranges counts, containment is not required
        return max(self.start, other.start) < min(self.end, other.end)

    def hourly_slots(self):
        cursor = self.start
        while cursor < self.end:
            yield TimeWindow(cursor, cursor + timedelta(hours=1))
            cursor += timedelta(hours=1)


class Clock:
    """Source of "now" plus business-timezone day boundaries."""

    def __init__(self, tz_name: str = "UTC"):
        self.tz = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def local_date(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()

    def today(self) -> date:
        return self.local_date(self.now())

    def truncate_hour(self, moment: datetime) -> datetime:
        # the grid is anchored to the business day, which matters for half-hour offset zones
        local = truncate_to_hour(moment.astimezone(self.tz))
        return local.astimezone(timezone.utc)

    def start_of_day(self, moment: datetime) -> datetime:
        local = moment.astimezone(self.tz)
        midnight = datetime.combine(local.date(), time(0, 0), tzinfo=self.tz)
        return midnight.astimezone(timezone.utc)

    def horizon(self, lookahead_days: int) -> TimeWindow:
        start = self.start_of_day(self.now())
        return TimeWindow(start, start + timedelta(days=lookahead_days))


class FixedClock(Clock):
    """Clock pinned to an explicit instant; used by tests and the demo script."""

    def __init__(self, now: datetime, tz_name: str = "UTC"):
        super().__init__(tz_name)
        self._now = as_utc(now)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, now: datetime):
        with self._lock:
            self._now = as_utc(now)

    def advance(self, **kwargs):
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
