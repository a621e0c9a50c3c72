"""Read path: merge template, overrides and the ledger into bookable slots.

Nothing here writes. Results may be slightly stale; the booking coordinator
re-checks at commit time.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from clinic_booking.core import config, errors
from clinic_booking.core.timeutil import as_utc, day_of_week, local_date, local_instant
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.availability import AvailabilityOverride
from clinic_booking.scheduling import stores
from clinic_booking.scheduling.intervals import (
    Interval,
    clip_intervals,
    slice_into_slots,
    subtract_intervals,
)

MAX_RANGE_DAYS = 366
MORNING_CUTOFF = time(12, 0)


@dataclass(frozen=True)
class Slot:
    start_time: datetime
    end_time: datetime
    local_start: datetime
    local_end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    @property
    def display_time(self) -> str:
        return f"{self.local_start:%H:%M} - {self.local_end:%H:%M}"

    @property
    def period(self) -> str:
        return 'morning' if self.local_start.time() < MORNING_CUTOFF else 'afternoon'


@dataclass(frozen=True)
class DaySlots:
    date: date
    slots: list[Slot] = field(default_factory=list)


@dataclass(frozen=True)
class ScheduleDay:
    date: date
    day_of_week: int
    template: list[tuple[time, time]]
    override: AvailabilityOverride | None
    working: list[Interval]
    booked: list[Appointment]

    @property
    def is_off(self) -> bool:
        return self.override is not None and self.override.is_day_off


def _validate_range(date_from: date, date_to: date) -> None:
    if date_from > date_to:
        raise errors.ValidationError(
            'date_from must not be after date_to.',
            date_from=date_from,
            date_to=date_to,
        )
    if (date_to - date_from).days >= MAX_RANGE_DAYS:
        raise errors.ValidationError(f'Date ranges are limited to {MAX_RANGE_DAYS} days.')


def _iterate_days(date_from: date, date_to: date):
    current = date_from
    while current <= date_to:
        yield current
        current += timedelta(days=1)


def _range_window(date_from: date, date_to: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    return local_instant(date_from, time.min, tz), local_instant(date_to + timedelta(days=1), time.min, tz)


def compute_day_slots(
    working: list[Interval],
    blocked: list[Interval],
    service_duration_minutes: int,
    granularity_minutes: int,
    tz: ZoneInfo,
    not_before: datetime | None = None,
) -> list[Slot]:
    if not_before is not None:
        working = clip_intervals(working, not_before)

    free = subtract_intervals(working, blocked)
    return [
        Slot(
            start_time=slot.start,
            end_time=slot.end,
            local_start=slot.start.astimezone(tz),
            local_end=slot.end.astimezone(tz),
        )
        for slot in slice_into_slots(free, service_duration_minutes, granularity_minutes, tz)
    ]


def resolve_slots(
    db: Session,
    doctor_id: int,
    date_from: date,
    date_to: date,
    service_duration_minutes: int,
    now: datetime,
    booking_horizon_days: int | None = None,
    min_lead_minutes: int | None = None,
    granularity_minutes: int | None = None,
) -> list[DaySlots]:
    """Open slots for each local calendar date in ``[date_from, date_to]``."""
    horizon_days = config.BOOKING_HORIZON_DAYS if booking_horizon_days is None else booking_horizon_days
    lead_minutes = config.MIN_LEAD_MINUTES if min_lead_minutes is None else min_lead_minutes
    granularity = granularity_minutes or config.SLOT_GRANULARITY_MINUTES

    if service_duration_minutes is None or service_duration_minutes <= 0:
        raise errors.ValidationError(
            'Service duration must be a positive number of minutes.',
            service_duration_minutes=service_duration_minutes,
        )
    if granularity <= 0:
        raise errors.ValidationError('Slot granularity must be positive.', granularity_minutes=granularity)
    if horizon_days < 0 or lead_minutes < 0:
        raise errors.ValidationError('Booking horizon and lead time cannot be negative.')
    _validate_range(date_from, date_to)

    doctor = stores.get_doctor(db, doctor_id)
    tz = stores.doctor_timezone(doctor)

    now = as_utc(now)
    earliest_start = now + timedelta(minutes=lead_minutes)
    earliest_date = local_date(earliest_start, tz)
    last_date = local_date(now + timedelta(days=horizon_days), tz)

    template = stores.weekly_template(db, doctor_id)
    overrides = stores.overrides_between(db, doctor_id, date_from, date_to)
    window_start, window_end = _range_window(date_from, date_to, tz)
    blocked = [
        Interval(as_utc(appointment.start_time), as_utc(appointment.end_time))
        for appointment in stores.blocking_appointments(db, doctor_id, window_start, window_end)
    ]

    resolved: list[DaySlots] = []
    for day in _iterate_days(date_from, date_to):
        if day < earliest_date or day > last_date:
            resolved.append(DaySlots(date=day))
            continue

        working = stores.working_intervals(day, template, overrides.get(day), tz)
        day_blocked = [interval for interval in blocked if any(interval.overlaps(w) for w in working)]
        resolved.append(
            DaySlots(
                date=day,
                slots=compute_day_slots(
                    working,
                    day_blocked,
                    service_duration_minutes,
                    granularity,
                    tz,
                    not_before=earliest_start if day == earliest_date else None,
                ),
            )
        )

    return resolved


def list_available_dates(
    db: Session,
    doctor_id: int,
    date_from: date,
    date_to: date,
    service_duration_minutes: int,
    now: datetime,
) -> list[DaySlots]:
    return [
        day for day in resolve_slots(db, doctor_id, date_from, date_to, service_duration_minutes, now)
        if day.slots
    ]


def build_schedule(db: Session, doctor_id: int, date_from: date, date_to: date) -> list[ScheduleDay]:
    """Doctor calendar view: template, override, effective hours and bookings per day."""
    _validate_range(date_from, date_to)

    doctor = stores.get_doctor(db, doctor_id)
    tz = stores.doctor_timezone(doctor)
    template = stores.weekly_template(db, doctor_id)
    overrides = stores.overrides_between(db, doctor_id, date_from, date_to)
    window_start, window_end = _range_window(date_from, date_to, tz)
    appointments = stores.blocking_appointments(db, doctor_id, window_start, window_end)

    schedule = []
    for day in _iterate_days(date_from, date_to):
        weekday = day_of_week(day)
        schedule.append(
            ScheduleDay(
                date=day,
                day_of_week=weekday,
                template=sorted(template.get(weekday, [])),
                override=overrides.get(day),
                working=stores.working_intervals(day, template, overrides.get(day), tz),
                booked=[
                    appointment for appointment in appointments
                    if local_date(appointment.start_time, tz) == day
                ],
            )
        )

    return schedule
