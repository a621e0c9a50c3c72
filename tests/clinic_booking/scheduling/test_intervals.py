from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from clinic_booking.scheduling.intervals import (
    Interval,
    align_to_grid,
    clip_intervals,
    is_on_grid,
    merge_intervals,
    slice_into_slots,
    slot_step,
    subtract_intervals,
)

UTC = ZoneInfo('UTC')


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, 5, hour, minute, tzinfo=timezone.utc)


def test_merge_intervals_joins_overlapping_and_touching_ranges() -> None:
    merged = merge_intervals([
        Interval(at(10), at(11)),
        Interval(at(9), at(10)),
        Interval(at(9, 30), at(10, 30)),
        Interval(at(13), at(14)),
    ])

    assert merged == [Interval(at(9), at(11)), Interval(at(13), at(14))]


def test_subtract_intervals_leaves_no_gap_between_adjacent_bookings() -> None:
    free = subtract_intervals(
        [Interval(at(9), at(12))],
        [Interval(at(9, 30), at(10)), Interval(at(10), at(10, 30))],
    )

    assert free == [Interval(at(9), at(9, 30)), Interval(at(10, 30), at(12))]


def test_subtract_intervals_truncates_partial_overlaps() -> None:
    free = subtract_intervals(
        [Interval(at(9), at(12))],
        [Interval(at(8), at(9, 15)), Interval(at(11, 45), at(13))],
    )

    assert free == [Interval(at(9, 15), at(11, 45))]


def test_subtract_intervals_returns_nothing_when_fully_blocked() -> None:
    assert subtract_intervals([Interval(at(9), at(10))], [Interval(at(8), at(11))]) == []


def test_clip_intervals_drops_past_ranges() -> None:
    clipped = clip_intervals([Interval(at(8), at(9)), Interval(at(9), at(12))], at(10, 10))

    assert clipped == [Interval(at(10, 10), at(12))]


def test_slot_step_rounds_duration_up_to_grid() -> None:
    assert slot_step(30, 15) == timedelta(minutes=30)
    assert slot_step(20, 15) == timedelta(minutes=30)
    assert slot_step(10, 15) == timedelta(minutes=15)


def test_align_to_grid_rounds_up_in_local_time() -> None:
    kathmandu = ZoneInfo('Asia/Kathmandu')  # UTC+05:45

    assert align_to_grid(at(9, 2), 15, UTC) == at(9, 15)
    assert align_to_grid(at(9, 15), 15, UTC) == at(9, 15)
    # 03:20 UTC is 09:05 in Kathmandu; the next local hour is 10:00 = 04:15 UTC.
    assert align_to_grid(at(3, 20), 60, kathmandu) == at(4, 15)
    assert is_on_grid(at(4, 15), 60, kathmandu)
    assert not is_on_grid(at(4, 0), 60, kathmandu)


def test_slice_into_slots_drops_short_tails() -> None:
    slots = slice_into_slots([Interval(at(9, 5), at(10, 20))], 30, 15, UTC)

    assert slots == [Interval(at(9, 15), at(9, 45)), Interval(at(9, 45), at(10, 15))]


def test_slice_into_slots_ignores_intervals_shorter_than_duration() -> None:
    assert slice_into_slots([Interval(at(9), at(9, 20))], 30, 15, UTC) == []
