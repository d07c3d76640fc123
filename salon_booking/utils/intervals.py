"""Half-open datetime intervals and branch-local time conversion.

All persisted datetimes are naive UTC. Branch working hours, schedules and rule
windows are wall-clock times in the branch timezone and are converted here.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List
from zoneinfo import ZoneInfo

from salon_booking.core.exceptions import InvalidInterval


def overlaps(
    other_start: datetime, other_end: datetime, start: datetime, end: datetime
) -> bool:
    """Three-way overlap test of ``[other_start, other_end)`` against ``[start, end)``.

    Same predicate as the ledger query: the other interval covers the start,
    covers the end, or lies inside.
    """
    return (
        (other_start <= start and other_end > start)
        or (other_start < end and other_end >= end)
        or (other_start >= start and other_end <= end)
    )


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise InvalidInterval(f"Interval end {self.end} must be after start {self.start}")

    @classmethod
    def of(cls, start: datetime, minutes: int) -> "Interval":
        if minutes <= 0:
            raise InvalidInterval(f"Duration must be positive, got {minutes} minutes")
        return cls(start, start + timedelta(minutes=minutes))

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(other.start, other.end, self.start, self.end)

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def intersection(self, other: "Interval"):
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if end <= start:
            return None
        return Interval(start, end)


def merge(intervals: Iterable[Interval]) -> List[Interval]:
    """Union of intervals as a sorted list of disjoint intervals."""
    merged: List[Interval] = []
    for interval in sorted(intervals):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, interval.end))
        else:
            merged.append(interval)
    return merged


def intersect(left: Iterable[Interval], right: Iterable[Interval]) -> List[Interval]:
    """Pairwise intersection of two interval sets, merged."""
    right = list(right)
    pieces = []
    for a in left:
        for b in right:
            piece = a.intersection(b)
            if piece is not None:
                pieces.append(piece)
    return merge(pieces)


def utcnow() -> datetime:
    """Current time as naive UTC, matching stored datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_to_utc(day: date, wall_time: time, tz_name: str) -> datetime:
    local = datetime.combine(day, wall_time, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(moment: datetime, tz_name: str) -> datetime:
    aware = moment.replace(tzinfo=timezone.utc)
    return aware.astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)


def local_window(day: date, start: time, end: time, tz_name: str) -> Interval:
    """Wall-clock window on ``day`` in UTC; ``end`` of midnight means end of day."""
    start_utc = local_to_utc(day, start, tz_name)
    if end == time(0, 0):
        end_utc = local_to_utc(day + timedelta(days=1), end, tz_name)
    else:
        end_utc = local_to_utc(day, end, tz_name)
    return Interval(start_utc, end_utc)


def day_bounds(day: date, tz_name: str) -> Interval:
    """The whole branch-local day as a UTC interval."""
    return local_window(day, time(0, 0), time(0, 0), tz_name)


def as_naive_utc(moment: datetime) -> datetime:
    """Normalize an incoming datetime; naive values are taken to be UTC already."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
