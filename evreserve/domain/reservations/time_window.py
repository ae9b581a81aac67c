"""Half-open time interval used for requested and held charging periods"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ...errors import WindowInvalid


def to_utc_naive(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC (naive values are assumed to be UTC already)"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class TimeWindow:
    """``[start, end)`` - a window ending at 10:30 does not touch one starting at 10:30"""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", to_utc_naive(self.start))
        object.__setattr__(self, "end", to_utc_naive(self.end))
        if self.end <= self.start:
            raise WindowInvalid(
                "End time must be after start time",
                {"start": self.start.isoformat(), "end": self.end.isoformat()},
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def minutes(self) -> float:
        return self.duration.total_seconds() / 60

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, instant: datetime) -> bool:
        return self.start <= to_utc_naive(instant) < self.end

    def to_dict(self) -> dict:
        return {"startTime": self.start.isoformat(), "endTime": self.end.isoformat()}
