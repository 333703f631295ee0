"""Caller time preferences resolved in business-local time."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional


class TimeBucket(str, Enum):
    """General parts of the day."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


# Local wall-clock bounds, start inclusive / end exclusive
BUCKET_HOURS: dict[TimeBucket, tuple[time, time]] = {
    TimeBucket.MORNING: (time(6, 0), time(12, 0)),
    TimeBucket.AFTERNOON: (time(12, 0), time(17, 0)),
    TimeBucket.EVENING: (time(17, 0), time(21, 0)),
}


_WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def bucket_for(value: time) -> Optional[TimeBucket]:
    """Return the bucket containing a local time, if any."""
    for bucket, (start, end) in BUCKET_HOURS.items():
        if start <= value < end:
            return bucket
    return None


@dataclass
class TimePreference:
    """
    What the caller said about when they want to come in.

    Any combination of fields may be set. An instance with nothing set
    means "any time" and searches the default window from today.

    Attributes:
        on_date: A specific local calendar date
        weekday: 0=Monday .. 6=Sunday, next occurrence with today included
        bucket: Morning / afternoon / evening
        exact_time: Slot must start exactly at this local time
        near_date: Rank slots by how close they fall to this date (widening)
        near_time: Secondary ranking by distance from this local time
        raw: Phrase the preference was parsed from
    """

    on_date: Optional[date] = None
    weekday: Optional[int] = None
    bucket: Optional[TimeBucket] = None
    exact_time: Optional[time] = None
    near_date: Optional[date] = None
    near_time: Optional[time] = None
    raw: Optional[str] = None

    def date_range(self, today: date, window_days: int) -> tuple[date, date]:
        """Local dates to search as [start, end)."""
        if self.on_date is not None:
            return self.on_date, self.on_date + timedelta(days=1)

        if self.weekday is not None:
            day = today + timedelta(days=(self.weekday - today.weekday()) % 7)
            return day, day + timedelta(days=1)

        return today, today + timedelta(days=window_days)

    def matches(self, local_start: datetime) -> bool:
        """Check a slot's local start against the time-of-day parts."""
        wall = local_start.time().replace(second=0, microsecond=0, tzinfo=None)
        if self.exact_time is not None and wall != self.exact_time:
            return False
        if self.bucket is not None:
            start, end = BUCKET_HOURS[self.bucket]
            if not (start <= wall < end):
                return False
        return True

    def widened(self, today: date, window_days: int) -> "TimePreference":
        """
        Same part of day anywhere in the search window, nearest first.

        An exact time loosens to its bucket. Slots are ranked by how far
        they fall from the day (and time) originally asked for, so days
        before the requested one stay in play.
        """
        start, _ = self.date_range(today, window_days)
        bucket = self.bucket
        if bucket is None and self.exact_time is not None:
            bucket = bucket_for(self.exact_time)
        anchored = self.on_date is not None or self.weekday is not None
        return TimePreference(
            bucket=bucket,
            near_date=start if anchored else None,
            near_time=self.exact_time,
            raw=self.raw,
        )

    def distance(self, local_start: datetime) -> tuple[int, int]:
        """Sort key: (days, minutes) away from the nearest-to point, zero when unset."""
        days = 0
        if self.near_date is not None:
            days = abs((local_start.date() - self.near_date).days)
        minutes = 0
        if self.near_time is not None:
            minutes = abs(
                (local_start.hour * 60 + local_start.minute)
                - (self.near_time.hour * 60 + self.near_time.minute)
            )
        return days, minutes

    def describe(self) -> str:
        """Short spoken description, e.g. "Tuesday, March 3 in the morning"."""
        parts = []
        if self.on_date is not None:
            parts.append(self.on_date.strftime("%A, %B %d").replace(" 0", " "))
        elif self.weekday is not None:
            parts.append(_WEEKDAY_NAMES[self.weekday])
        if self.bucket is not None:
            parts.append(f"in the {self.bucket.value}")
        if self.exact_time is not None:
            parts.append(f"at {self.exact_time.strftime('%I:%M %p').lstrip('0')}")
        return " ".join(parts) or "any time"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "on_date": self.on_date.isoformat() if self.on_date else None,
            "weekday": self.weekday,
            "bucket": self.bucket.value if self.bucket else None,
            "exact_time": self.exact_time.strftime("%H:%M") if self.exact_time else None,
            "near_date": self.near_date.isoformat() if self.near_date else None,
            "near_time": self.near_time.strftime("%H:%M") if self.near_time else None,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TimePreference":
        """Create from dictionary."""
        return cls(
            on_date=date.fromisoformat(data["on_date"]) if data.get("on_date") else None,
            weekday=data.get("weekday"),
            bucket=TimeBucket(data["bucket"]) if data.get("bucket") else None,
            exact_time=time.fromisoformat(data["exact_time"]) if data.get("exact_time") else None,
            near_date=date.fromisoformat(data["near_date"]) if data.get("near_date") else None,
            near_time=time.fromisoformat(data["near_time"]) if data.get("near_time") else None,
            raw=data.get("raw"),
        )
