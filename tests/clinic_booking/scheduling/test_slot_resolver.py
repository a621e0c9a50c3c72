from datetime import date, time, timedelta

import pytest
from conftest import MONDAY, NOW, add_appointment, utc

from clinic_booking.core import errors
from clinic_booking.models.appointment import AppointmentStatus
from clinic_booking.models.availability import OverrideKind, WeeklyAvailability
from clinic_booking.models.directory import Doctor
from clinic_booking.scheduling import stores
from clinic_booking.scheduling.slot_resolver import build_schedule, list_available_dates, resolve_slots


def monday_slots(db, doctor_id, duration=30, now=NOW, **kwargs):
    days = resolve_slots(db, doctor_id, MONDAY, MONDAY, duration, now=now, **kwargs)
    assert len(days) == 1
    return [slot.start_time for slot in days[0].slots]


def test_weekly_template_yields_six_half_hour_slots(db, clinic) -> None:
    assert monday_slots(db, clinic.doctor_id) == [
        utc(MONDAY, 9, 0),
        utc(MONDAY, 9, 30),
        utc(MONDAY, 10, 0),
        utc(MONDAY, 10, 30),
        utc(MONDAY, 11, 0),
        utc(MONDAY, 11, 30),
    ]


def test_scheduled_appointment_removes_only_its_slot(db, session_factory, clinic) -> None:
    add_appointment(session_factory, clinic.doctor_id, clinic.service_id, utc(MONDAY, 10), utc(MONDAY, 10, 30))

    assert monday_slots(db, clinic.doctor_id) == [
        utc(MONDAY, 9, 0),
        utc(MONDAY, 9, 30),
        utc(MONDAY, 10, 30),
        utc(MONDAY, 11, 0),
        utc(MONDAY, 11, 30),
    ]


def test_day_off_override_empties_the_date(db, clinic) -> None:
    stores.set_override(db, clinic.doctor_id, MONDAY, OverrideKind.DAY_OFF)
    db.commit()

    assert monday_slots(db, clinic.doctor_id) == []


def test_custom_hours_override_replaces_template(db, clinic) -> None:
    stores.set_override(db, clinic.doctor_id, MONDAY, OverrideKind.CUSTOM_HOURS, time(14, 0), time(15, 30))
    db.commit()

    days = resolve_slots(db, clinic.doctor_id, MONDAY, MONDAY, 30, now=NOW)
    slots = days[0].slots

    assert [slot.start_time for slot in slots] == [utc(MONDAY, 14), utc(MONDAY, 14, 30), utc(MONDAY, 15)]
    assert all(utc(MONDAY, 14) <= slot.start_time and slot.end_time <= utc(MONDAY, 15, 30) for slot in slots)


def test_overlapping_template_rows_are_merged(db, clinic) -> None:
    stores.clear_weekly_availability(db, clinic.doctor_id)
    # Written directly: the store refuses overlapping rows.
    db.add_all([
        WeeklyAvailability(doctor_id=clinic.doctor_id, day_of_week=1, start_time=time(9, 0), end_time=time(10, 0)),
        WeeklyAvailability(doctor_id=clinic.doctor_id, day_of_week=1, start_time=time(9, 30), end_time=time(11, 0)),
    ])
    db.commit()

    assert monday_slots(db, clinic.doctor_id) == [
        utc(MONDAY, 9, 0),
        utc(MONDAY, 9, 30),
        utc(MONDAY, 10, 0),
        utc(MONDAY, 10, 30),
    ]


def test_adjacent_bookings_leave_no_false_gap(db, session_factory, clinic) -> None:
    add_appointment(session_factory, clinic.doctor_id, clinic.service_id, utc(MONDAY, 9, 30), utc(MONDAY, 10))
    add_appointment(session_factory, clinic.doctor_id, clinic.service_id, utc(MONDAY, 10), utc(MONDAY, 10, 30))

    assert monday_slots(db, clinic.doctor_id) == [
        utc(MONDAY, 9, 0),
        utc(MONDAY, 10, 30),
        utc(MONDAY, 11, 0),
        utc(MONDAY, 11, 30),
    ]


def test_partial_overlap_truncates_free_time(db, session_factory, clinic) -> None:
    add_appointment(session_factory, clinic.doctor_id, clinic.long_service_id, utc(MONDAY, 9, 45), utc(MONDAY, 10, 15))

    assert monday_slots(db, clinic.doctor_id) == [
        utc(MONDAY, 9, 0),
        utc(MONDAY, 10, 15),
        utc(MONDAY, 10, 45),
        utc(MONDAY, 11, 15),
    ]


def test_non_blocking_statuses_do_not_occupy_time(db, session_factory, clinic) -> None:
    for status, hour in (
        (AppointmentStatus.CANCELLED, 9),
        (AppointmentStatus.COMPLETED, 10),
        (AppointmentStatus.NO_SHOW, 11),
    ):
        add_appointment(session_factory, clinic.doctor_id, clinic.service_id, utc(MONDAY, hour), utc(MONDAY, hour, 30), status)

    assert len(monday_slots(db, clinic.doctor_id)) == 6


def test_pending_appointment_blocks_like_scheduled(db, session_factory, clinic) -> None:
    add_appointment(
        session_factory,
        clinic.doctor_id,
        clinic.service_id,
        utc(MONDAY, 9),
        utc(MONDAY, 9, 30),
        AppointmentStatus.PENDING,
    )

    assert utc(MONDAY, 9) not in monday_slots(db, clinic.doctor_id)


def test_returned_slots_never_overlap_blocking_appointments(db, session_factory, clinic) -> None:
    blocked = [(utc(MONDAY, 9, 15), utc(MONDAY, 9, 45)), (utc(MONDAY, 11), utc(MONDAY, 12))]
    for start, end in blocked:
        add_appointment(session_factory, clinic.doctor_id, clinic.service_id, start, end)

    for duration in (15, 20, 30, 45):
        days = resolve_slots(db, clinic.doctor_id, MONDAY, MONDAY, duration, now=NOW)
        for slot in days[0].slots:
            assert slot.end_time - slot.start_time == timedelta(minutes=duration)
            assert all(not (slot.start_time < end and start < slot.end_time) for start, end in blocked)


def test_lead_time_trims_the_current_day(db, clinic) -> None:
    slots = monday_slots(db, clinic.doctor_id, now=utc(MONDAY, 9, 10), min_lead_minutes=60)

    assert slots == [utc(MONDAY, 10, 15), utc(MONDAY, 10, 45), utc(MONDAY, 11, 15)]


def test_dates_before_lead_cutoff_have_no_slots(db, clinic) -> None:
    assert monday_slots(db, clinic.doctor_id, now=utc(MONDAY + timedelta(days=1), 8)) == []


def test_dates_beyond_horizon_have_no_slots(db, clinic) -> None:
    assert monday_slots(db, clinic.doctor_id, booking_horizon_days=3) == []
    assert len(monday_slots(db, clinic.doctor_id, booking_horizon_days=4)) == 6


def test_one_entry_per_date_in_range(db, clinic) -> None:
    days = resolve_slots(db, clinic.doctor_id, MONDAY, MONDAY + timedelta(days=6), 30, now=NOW)

    assert [day.date for day in days] == [MONDAY + timedelta(days=offset) for offset in range(7)]
    assert [len(day.slots) for day in days] == [6, 0, 0, 0, 0, 0, 0]


def test_slots_follow_doctor_timezone(db, clinic) -> None:
    doctor = db.get(Doctor, clinic.doctor_id)
    doctor.timezone = 'Asia/Ho_Chi_Minh'
    db.commit()

    slots = resolve_slots(db, clinic.doctor_id, MONDAY, MONDAY, 30, now=NOW)[0].slots

    assert slots[0].start_time == utc(MONDAY, 2)
    assert slots[0].display_time == '09:00 - 09:30'
    assert slots[0].period == 'morning'


def test_slot_period_switches_at_noon(db, clinic) -> None:
    stores.set_override(db, clinic.doctor_id, MONDAY, OverrideKind.CUSTOM_HOURS, time(11, 30), time(13, 0))
    db.commit()

    slots = resolve_slots(db, clinic.doctor_id, MONDAY, MONDAY, 30, now=NOW)[0].slots

    assert [slot.period for slot in slots] == ['morning', 'afternoon', 'afternoon']


@pytest.mark.parametrize('duration', [0, -30])
def test_non_positive_duration_is_rejected(db, clinic, duration: int) -> None:
    with pytest.raises(errors.ValidationError):
        resolve_slots(db, clinic.doctor_id, MONDAY, MONDAY, duration, now=NOW)


def test_reversed_range_is_rejected(db, clinic) -> None:
    with pytest.raises(errors.ValidationError):
        resolve_slots(db, clinic.doctor_id, MONDAY, MONDAY - timedelta(days=1), 30, now=NOW)


def test_unknown_doctor_is_not_found(db, clinic) -> None:
    with pytest.raises(errors.NotFound) as exception_info:
        resolve_slots(db, 404, MONDAY, MONDAY, 30, now=NOW)

    assert exception_info.value.to_dict()['entity'] == 'Doctor'


def test_resolver_performs_no_writes(db, session_factory, clinic) -> None:
    resolve_slots(db, clinic.doctor_id, MONDAY, MONDAY, 30, now=NOW)

    assert not db.new and not db.dirty and not db.deleted


def test_list_available_dates_skips_empty_days(db, clinic) -> None:
    days = list_available_dates(db, clinic.doctor_id, MONDAY, MONDAY + timedelta(days=13), 30, now=NOW)

    assert [day.date for day in days] == [MONDAY, MONDAY + timedelta(days=7)]


def test_build_schedule_reports_override_and_bookings(db, session_factory, clinic) -> None:
    tuesday = MONDAY + timedelta(days=1)
    appointment_id = add_appointment(
        session_factory, clinic.doctor_id, clinic.service_id, utc(MONDAY, 9), utc(MONDAY, 9, 30)
    )
    stores.set_override(db, clinic.doctor_id, tuesday, OverrideKind.DAY_OFF, reason='Conference')
    db.commit()

    monday, tuesday_view = build_schedule(db, clinic.doctor_id, MONDAY, tuesday)

    assert monday.day_of_week == 1
    assert monday.template == [(time(9, 0), time(12, 0))]
    assert [appointment.id for appointment in monday.booked] == [appointment_id]
    assert not monday.is_off
    assert tuesday_view.is_off
    assert tuesday_view.working == []
    assert tuesday_view.override.reason == 'Conference'


def test_resolver_uses_sunday_as_day_zero(db, clinic) -> None:
    sunday = date(2026, 1, 4)
    stores.add_weekly_availability(db, clinic.doctor_id, 0, time(8, 0), time(9, 0))
    db.commit()

    days = resolve_slots(db, clinic.doctor_id, sunday, sunday, 30, now=NOW)

    assert [slot.start_time for slot in days[0].slots] == [utc(sunday, 8), utc(sunday, 8, 30)]
