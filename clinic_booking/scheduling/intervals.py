"""Half-open ``[start, end)`` interval arithmetic over aware datetimes."""

from datetime import datetime, timedelta
from math import ceil
from typing import Iterable, NamedTuple
from zoneinfo import ZoneInfo


class Interval(NamedTuple):
    start: datetime
    end: datetime

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Union of the given intervals, sorted. Touching intervals are joined."""
    merged: list[Interval] = []

    for current in sorted(interval for interval in intervals if interval.start < interval.end):
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, current.end))
        else:
            merged.append(current)

    return merged


def subtract_intervals(base: Iterable[Interval], blocked: Iterable[Interval]) -> list[Interval]:
    """Remove every blocked interval from the base intervals.

    Partial overlaps truncate the base interval; nothing is dropped wholesale.
    """
    blocked_sorted = merge_intervals(blocked)
    free: list[Interval] = []

    for interval in merge_intervals(base):
        cursor = interval.start
        for block in blocked_sorted:
            if block.end <= cursor:
                continue
            if block.start >= interval.end:
                break
            if block.start > cursor:
                free.append(Interval(cursor, block.start))
            cursor = max(cursor, block.end)
            if cursor >= interval.end:
                break
        if cursor < interval.end:
            free.append(Interval(cursor, interval.end))

    return free


def clip_intervals(intervals: Iterable[Interval], not_before: datetime) -> list[Interval]:
    clipped = []
    for interval in intervals:
        if interval.end <= not_before:
            continue
        clipped.append(Interval(max(interval.start, not_before), interval.end))
    return clipped


def slot_step(duration_minutes: int, granularity_minutes: int) -> timedelta:
    """Smallest multiple of the grid that fits one slot."""
    return timedelta(minutes=ceil(duration_minutes / granularity_minutes) * granularity_minutes)


def align_to_grid(instant: datetime, granularity_minutes: int, tz: ZoneInfo) -> datetime:
    """Round ``instant`` up to the next grid line counted from local midnight."""
    local = instant.astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = local - midnight
    grid = timedelta(minutes=granularity_minutes)
    steps = ceil(elapsed / grid)
    return (midnight + steps * grid).astimezone(instant.tzinfo)


def is_on_grid(instant: datetime, granularity_minutes: int, tz: ZoneInfo) -> bool:
    return align_to_grid(instant, granularity_minutes, tz) == instant


def slice_into_slots(
    free: Iterable[Interval],
    duration_minutes: int,
    granularity_minutes: int,
    tz: ZoneInfo,
) -> list[Interval]:
    duration = timedelta(minutes=duration_minutes)
    step = slot_step(duration_minutes, granularity_minutes)
    slots: list[Interval] = []

    for interval in sorted(free):
        current = align_to_grid(interval.start, granularity_minutes, tz)
        while current + duration <= interval.end:
            slots.append(Interval(current, current + duration))
            current += step

    return slots
