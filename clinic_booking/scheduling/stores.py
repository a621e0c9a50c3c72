"""Weekly template and date override stores.

Writes here come from the doctor/admin schedule editing flow and enforce the
row invariants. The resolver and the booking coordinator only read.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from clinic_booking.core import errors
from clinic_booking.core.timeutil import day_of_week, local_instant, to_storage
from clinic_booking.models.appointment import BLOCKING_STATUSES, Appointment, AppointmentStatus
from clinic_booking.models.availability import AvailabilityOverride, OverrideKind, WeeklyAvailability
from clinic_booking.models.directory import Doctor, Service
from clinic_booking.scheduling.intervals import Interval, merge_intervals

logger = logging.getLogger(__name__)


def get_doctor(db: Session, doctor_id: int) -> Doctor:
    doctor = db.get(Doctor, doctor_id)
    if doctor is None:
        raise errors.NotFound('Doctor', doctor_id)
    return doctor


def get_service(db: Session, service_id: int) -> Service:
    service = db.get(Service, service_id)
    if service is None:
        raise errors.NotFound('Service', service_id)
    return service


def get_bookable_service(db: Session, doctor: Doctor, service_id: int) -> Service:
    """The service, provided the doctor's clinic offers it."""
    service = get_service(db, service_id)
    if doctor.clinic_id is None:
        raise errors.ValidationError('Doctor is not associated with a clinic.', doctor_id=doctor.id)
    if service.clinic_id != doctor.clinic_id:
        raise errors.ValidationError(
            "Service is not offered at the doctor's clinic.",
            doctor_id=doctor.id,
            service_id=service.id,
        )
    if service.duration_minutes is None or service.duration_minutes <= 0:
        raise errors.ValidationError('Service has no bookable duration.', service_id=service.id)
    return service


def doctor_timezone(doctor: Doctor) -> ZoneInfo:
    try:
        return ZoneInfo(doctor.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise errors.ValidationError(
            f'Doctor {doctor.id} has an unknown timezone {doctor.timezone!r}.',
            doctor_id=doctor.id,
        ) from exc


def _validate_interval(start_time: time | None, end_time: time | None) -> None:
    if start_time is None or end_time is None:
        raise errors.ValidationError('Start and end times are required.')
    if start_time >= end_time:
        raise errors.ValidationError(
            'Start time must be before end time.',
            start_time=start_time,
            end_time=end_time,
        )


# Template store

def add_weekly_availability(
    db: Session,
    doctor_id: int,
    weekday: int,
    start_time: time,
    end_time: time,
) -> WeeklyAvailability:
    get_doctor(db, doctor_id)

    if not 0 <= weekday <= 6:
        raise errors.ValidationError('Day of week must be between 0 (Sunday) and 6 (Saturday).', day_of_week=weekday)
    _validate_interval(start_time, end_time)

    overlapping = db.query(WeeklyAvailability).filter(
        WeeklyAvailability.doctor_id == doctor_id,
        WeeklyAvailability.day_of_week == weekday,
        WeeklyAvailability.start_time < end_time,
        WeeklyAvailability.end_time > start_time,
    ).first()
    if overlapping:
        raise errors.ValidationError(
            'Working hours overlap an existing interval for this day.',
            doctor_id=doctor_id,
            day_of_week=weekday,
            existing_id=overlapping.id,
        )

    row = WeeklyAvailability(
        doctor_id=doctor_id,
        day_of_week=weekday,
        start_time=start_time,
        end_time=end_time,
    )
    db.add(row)
    db.flush()
    return row


def clear_weekly_availability(db: Session, doctor_id: int, weekday: int | None = None) -> int:
    get_doctor(db, doctor_id)

    query = db.query(WeeklyAvailability).filter(WeeklyAvailability.doctor_id == doctor_id)
    if weekday is not None:
        query = query.filter(WeeklyAvailability.day_of_week == weekday)

    removed = query.delete(synchronize_session=False)
    logger.info('Removed %s weekly availability rows for doctor %s', removed, doctor_id)
    return removed


def list_weekly_availability(db: Session, doctor_id: int) -> list[WeeklyAvailability]:
    return db.query(WeeklyAvailability).filter(
        WeeklyAvailability.doctor_id == doctor_id,
    ).order_by(WeeklyAvailability.day_of_week.asc(), WeeklyAvailability.start_time.asc()).all()


def weekly_template(db: Session, doctor_id: int) -> dict[int, list[tuple[time, time]]]:
    template: dict[int, list[tuple[time, time]]] = defaultdict(list)
    for row in list_weekly_availability(db, doctor_id):
        template[row.day_of_week].append((row.start_time, row.end_time))
    return template


# Override store

def set_override(
    db: Session,
    doctor_id: int,
    override_date: date,
    kind: OverrideKind,
    start_time: time | None = None,
    end_time: time | None = None,
    reason: str | None = None,
) -> AvailabilityOverride:
    """Create or replace the single override for ``(doctor_id, override_date)``."""
    get_doctor(db, doctor_id)
    kind = OverrideKind(kind)

    if kind is OverrideKind.CUSTOM_HOURS:
        _validate_interval(start_time, end_time)
    else:
        start_time = end_time = None

    override = db.query(AvailabilityOverride).filter(
        AvailabilityOverride.doctor_id == doctor_id,
        AvailabilityOverride.date == override_date,
    ).first()

    if override is None:
        override = AvailabilityOverride(doctor_id=doctor_id, date=override_date)
        db.add(override)

    override.kind = kind.value
    override.start_time = start_time
    override.end_time = end_time
    override.reason = reason
    db.flush()
    return override


def remove_override(db: Session, doctor_id: int, override_date: date) -> None:
    override = db.query(AvailabilityOverride).filter(
        AvailabilityOverride.doctor_id == doctor_id,
        AvailabilityOverride.date == override_date,
    ).first()
    if override is None:
        raise errors.NotFound('AvailabilityOverride', f'{doctor_id}/{override_date.isoformat()}')
    db.delete(override)
    db.flush()


def overrides_between(db: Session, doctor_id: int, date_from: date, date_to: date) -> dict[date, AvailabilityOverride]:
    overrides = db.query(AvailabilityOverride).filter(
        AvailabilityOverride.doctor_id == doctor_id,
        AvailabilityOverride.date >= date_from,
        AvailabilityOverride.date <= date_to,
    ).all()
    return {override.date: override for override in overrides}


# Effective working hours

def working_intervals(
    day: date,
    template: dict[int, list[tuple[time, time]]],
    override: AvailabilityOverride | None,
    tz: ZoneInfo,
) -> list[Interval]:
    """Working intervals for one local date as UTC instants.

    An override replaces the template for its date; it never merges with it.
    """
    if override is not None:
        if override.is_day_off:
            return []
        return [Interval(local_instant(day, override.start_time, tz), local_instant(day, override.end_time, tz))]

    return merge_intervals(
        Interval(local_instant(day, start, tz), local_instant(day, end, tz))
        for start, end in template.get(day_of_week(day), [])
    )


# Ledger reads

def blocking_appointments(db: Session, doctor_id: int, window_start: datetime, window_end: datetime) -> list[Appointment]:
    return db.query(Appointment).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.status.in_(BLOCKING_STATUSES),
        Appointment.start_time < to_storage(window_end),
        Appointment.end_time > to_storage(window_start),
    ).order_by(Appointment.start_time.asc()).all()


def get_appointment(db: Session, appointment_id: int, for_update: bool = False) -> Appointment:
    query = db.query(Appointment).filter(Appointment.id == appointment_id)
    if for_update:
        query = query.with_for_update()
    appointment = query.first()
    if appointment is None:
        raise errors.NotFound('Appointment', appointment_id)
    return appointment


def list_appointments(
    db: Session,
    patient_id: int | None = None,
    doctor_id: int | None = None,
    status: AppointmentStatus | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[Appointment]:
    """Appointments for a patient or a doctor, oldest first.

    Date bounds are inclusive UTC calendar dates on ``start_time``.
    """
    if patient_id is None and doctor_id is None:
        raise errors.ValidationError('Filter by patient_id or doctor_id.')
    if date_from is not None and date_to is not None and date_from > date_to:
        raise errors.ValidationError('date_from must not be after date_to.', date_from=date_from, date_to=date_to)

    query = db.query(Appointment)
    if patient_id is not None:
        query = query.filter(Appointment.patient_id == patient_id)
    if doctor_id is not None:
        query = query.filter(Appointment.doctor_id == doctor_id)
    if status is not None:
        query = query.filter(Appointment.status == AppointmentStatus(status).value)
    if date_from is not None:
        query = query.filter(Appointment.start_time >= datetime.combine(date_from, time.min))
    if date_to is not None:
        query = query.filter(Appointment.start_time < datetime.combine(date_to + timedelta(days=1), time.min))

    return query.order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()
