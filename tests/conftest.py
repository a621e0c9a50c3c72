import os
from datetime import date, datetime, time, timedelta, timezone
from contextlib import contextmanager
from decimal import Decimal
from itertools import count
from types import SimpleNamespace

import pytest

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from sqlalchemy.orm import sessionmaker  # noqa: E402

from clinic_booking.core.timeutil import to_storage  # noqa: E402
from clinic_booking.database import WRITE_TRANSACTION_OPTIONS, create_booking_engine, init_database  # noqa: E402
from clinic_booking.models.appointment import Appointment, AppointmentStatus, PaymentStatus  # noqa: E402
from clinic_booking.models.availability import WeeklyAvailability  # noqa: E402
from clinic_booking.models.directory import Clinic, Doctor, Service  # noqa: E402
from clinic_booking.scheduling.booking import BookingCoordinator, BookingPolicy  # noqa: E402
from clinic_booking.scheduling.events import ALL_EVENTS, EventPublisher  # noqa: E402
from clinic_booking.scheduling.state_machine import AppointmentLifecycle  # noqa: E402

# 2026-01-05 is a Monday (day_of_week 1).
MONDAY = date(2026, 1, 5)
NOW = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)

_appointment_keys = count(1)


def utc(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine(tmp_path):
    booking_engine = create_booking_engine(f"sqlite:///{tmp_path / 'booking.db'}", timeout_seconds=10)
    init_database(booking_engine)
    try:
        yield booking_engine
    finally:
        booking_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clinic(session_factory):
    """One active clinic with a UTC doctor working Mondays 09:00-12:00."""
    with session_factory() as session:
        active_clinic = Clinic(name='Central Clinic', is_active=True)
        other_clinic = Clinic(name='Other Clinic', is_active=True)
        session.add_all([active_clinic, other_clinic])
        session.flush()

        doctor = Doctor(clinic_id=active_clinic.id, first_name='An', last_name='Nguyen', timezone='UTC')
        free_service = Service(clinic_id=active_clinic.id, name='Consultation', duration_minutes=30, price=Decimal('0'))
        paid_service = Service(clinic_id=active_clinic.id, name='Ultrasound', duration_minutes=30, price=Decimal('250000'))
        long_service = Service(clinic_id=active_clinic.id, name='Therapy', duration_minutes=60, price=Decimal('0'))
        foreign_service = Service(clinic_id=other_clinic.id, name='Dental', duration_minutes=30, price=Decimal('0'))
        session.add_all([doctor, free_service, paid_service, long_service, foreign_service])
        session.flush()

        session.add(WeeklyAvailability(doctor_id=doctor.id, day_of_week=1, start_time=time(9, 0), end_time=time(12, 0)))
        session.commit()

        return SimpleNamespace(
            clinic_id=active_clinic.id,
            other_clinic_id=other_clinic.id,
            doctor_id=doctor.id,
            service_id=free_service.id,
            paid_service_id=paid_service.id,
            long_service_id=long_service.id,
            foreign_service_id=foreign_service.id,
        )


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def published_events():
    return []


@pytest.fixture
def publisher(published_events):
    events = EventPublisher()
    events.subscribe(ALL_EVENTS, published_events.append)
    return events


@pytest.fixture
def policy():
    return BookingPolicy(
        booking_horizon_days=30,
        min_lead_minutes=60,
        granularity_minutes=15,
        timeout_seconds=10,
        payment_gate_enabled=True,
    )


@pytest.fixture
def coordinator(session_factory, publisher, clock, policy):
    return BookingCoordinator(session_factory, events=publisher, clock=clock, policy=policy)


@pytest.fixture
def lifecycle(session_factory, publisher, clock):
    return AppointmentLifecycle(session_factory, events=publisher, clock=clock)


def add_appointment(
    session_factory,
    doctor_id: int,
    service_id: int,
    start: datetime,
    end: datetime,
    status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    patient_id: int = 99,
) -> int:
    with session_factory() as session:
        appointment = Appointment(
            doctor_id=doctor_id,
            patient_id=patient_id,
            service_id=service_id,
            start_time=to_storage(start),
            end_time=to_storage(end),
            status=status.value,
            payment_status=PaymentStatus.NOT_REQUIRED.value,
            idempotency_key=f'seed-{next(_appointment_keys)}',
        )
        session.add(appointment)
        session.commit()
        return appointment.id


@contextmanager
def hold_write_lock(engine):
    """Keep the SQLite write lock taken by another connection."""
    connection = engine.connect().execution_options(**WRITE_TRANSACTION_OPTIONS)
    transaction = connection.begin()
    try:
        yield
    finally:
        transaction.rollback()
        connection.close()
