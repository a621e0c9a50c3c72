"""The single write path into the booking ledger."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from clinic_booking.core import config, errors
from clinic_booking.core.timeutil import as_utc, local_date, to_storage, utc_now
from clinic_booking.database import apply_transaction_timeout, write_transaction_options
from clinic_booking.models.appointment import BLOCKING_STATUSES, Appointment, AppointmentStatus, PaymentStatus
from clinic_booking.models.directory import Clinic
from clinic_booking.scheduling import stores
from clinic_booking.scheduling.events import APPOINTMENT_CREATED, AppointmentEvent, EventPublisher, default_publisher
from clinic_booking.scheduling.intervals import Interval, is_on_grid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingPolicy:
    booking_horizon_days: int
    min_lead_minutes: int
    granularity_minutes: int
    timeout_seconds: int
    payment_gate_enabled: bool

    @classmethod
    def from_config(cls) -> 'BookingPolicy':
        return cls(
            booking_horizon_days=config.BOOKING_HORIZON_DAYS,
            min_lead_minutes=config.MIN_LEAD_MINUTES,
            granularity_minutes=config.SLOT_GRANULARITY_MINUTES,
            timeout_seconds=config.BOOKING_TIMEOUT_SECONDS,
            payment_gate_enabled=config.PAYMENT_GATE_ENABLED,
        )


@dataclass(frozen=True)
class _BookingRequest:
    doctor_id: int
    patient_id: int
    service_id: int
    start_time: datetime
    end_time: datetime | None
    idempotency_key: str
    notes: str | None


@dataclass(frozen=True)
class _ValidatedBooking:
    end_time: datetime
    status: AppointmentStatus
    payment_status: PaymentStatus


class BookingCoordinator:
    """Validates a booking request and commits it atomically.

    Overlap detection that decides the outcome runs inside the write
    transaction and is backed by the storage layer (an exclusion constraint on
    PostgreSQL, ``BEGIN IMMEDIATE`` on SQLite), so it holds across processes.
    Conflicts are never retried here; picking another slot is the caller's call.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
        policy: BookingPolicy | None = None,
    ):
        self._session_factory = session_factory
        self._events = events or default_publisher
        self._clock = clock
        self._policy = policy or BookingPolicy.from_config()

    def book(
        self,
        doctor_id: int,
        patient_id: int,
        service_id: int,
        requested_start: datetime,
        requested_end: datetime | None = None,
        idempotency_key: str | None = None,
        notes: str | None = None,
    ) -> Appointment:
        request = _BookingRequest(
            doctor_id=doctor_id,
            patient_id=patient_id,
            service_id=service_id,
            start_time=as_utc(requested_start),
            end_time=as_utc(requested_end) if requested_end is not None else None,
            idempotency_key=_normalize_key(idempotency_key),
            notes=_normalize_notes(notes),
        )

        with self._session_factory() as db:
            existing = _find_by_key(db, request.idempotency_key)
            if existing is not None:
                return _replay(existing, request)
            validated = self._validate(db, request)

        appointment, created = self._commit(request, validated)
        if created:
            self._events.publish(AppointmentEvent.from_appointment(APPOINTMENT_CREATED, appointment))
        return appointment

    def _validate(self, db: Session, request: _BookingRequest) -> _ValidatedBooking:
        if request.patient_id is None or request.patient_id <= 0:
            raise errors.ValidationError('A valid patient id is required.', patient_id=request.patient_id)

        doctor = stores.get_doctor(db, request.doctor_id)
        service = stores.get_bookable_service(db, doctor, request.service_id)

        clinic = db.get(Clinic, doctor.clinic_id)
        if clinic is None:
            raise errors.NotFound('Clinic', doctor.clinic_id)
        if not clinic.is_active:
            raise errors.ValidationError('Clinic is not accepting bookings.', clinic_id=clinic.id)

        end_time = request.start_time + timedelta(minutes=service.duration_minutes)
        if request.end_time is not None and request.end_time != end_time:
            raise errors.ValidationError(
                'Requested interval does not match the service duration.',
                service_id=service.id,
                duration_minutes=service.duration_minutes,
                requested_start=request.start_time,
                requested_end=request.end_time,
            )

        now = as_utc(self._clock())
        tz = stores.doctor_timezone(doctor)
        earliest_start = now + timedelta(minutes=self._policy.min_lead_minutes)
        if request.start_time < earliest_start:
            raise errors.LeadTimeViolation(
                f'Appointments must start at least {self._policy.min_lead_minutes} minutes from now.',
                doctor_id=doctor.id,
                requested_start=request.start_time,
                earliest_start=earliest_start,
            )

        booking_date = local_date(request.start_time, tz)
        last_date = local_date(now + timedelta(days=self._policy.booking_horizon_days), tz)
        if booking_date > last_date:
            raise errors.HorizonExceeded(
                f'Appointments can only be booked {self._policy.booking_horizon_days} days ahead.',
                doctor_id=doctor.id,
                requested_date=booking_date,
                last_bookable_date=last_date,
            )

        if not is_on_grid(request.start_time, self._policy.granularity_minutes, tz):
            raise errors.ValidationError(
                f'Appointments must start on {self._policy.granularity_minutes}-minute boundaries.',
                requested_start=request.start_time,
            )

        # Advisory: working hours can change under us; the commit re-checks overlaps.
        working = stores.working_intervals(
            booking_date,
            stores.weekly_template(db, doctor.id),
            stores.overrides_between(db, doctor.id, booking_date, booking_date).get(booking_date),
            tz,
        )
        requested = Interval(request.start_time, end_time)
        if not any(interval.contains(requested) for interval in working):
            raise errors.ValidationError(
                'Requested time is outside the doctor\'s working hours.',
                doctor_id=doctor.id,
                requested_start=request.start_time,
                requested_end=end_time,
            )

        if self._policy.payment_gate_enabled and (service.price or 0) > 0:
            return _ValidatedBooking(end_time, AppointmentStatus.PENDING, PaymentStatus.PENDING)
        return _ValidatedBooking(end_time, AppointmentStatus.SCHEDULED, PaymentStatus.NOT_REQUIRED)

    def _commit(self, request: _BookingRequest, validated: _ValidatedBooking) -> tuple[Appointment, bool]:
        start_time = to_storage(request.start_time)
        end_time = to_storage(validated.end_time)

        try:
            with self._session_factory() as db:
                connection = db.connection(execution_options=write_transaction_options(self._policy.timeout_seconds))
                apply_transaction_timeout(connection, self._policy.timeout_seconds)

                conflict = db.query(Appointment.id).filter(
                    Appointment.doctor_id == request.doctor_id,
                    Appointment.status.in_(BLOCKING_STATUSES),
                    Appointment.start_time < end_time,
                    Appointment.end_time > start_time,
                ).first()
                if conflict is not None:
                    # A replay of this key may have committed since the pre-check.
                    existing = _find_by_key(db, request.idempotency_key)
                    if existing is not None:
                        return _replay(existing, request), False
                    logger.warning(
                        'Slot taken for doctor %s at %s (conflicts with appointment %s)',
                        request.doctor_id,
                        request.start_time.isoformat(),
                        conflict.id,
                    )
                    raise errors.SlotTaken(
                        'The requested time was booked by someone else.',
                        doctor_id=request.doctor_id,
                        requested_start=request.start_time,
                        requested_end=validated.end_time,
                        conflicting_appointment_id=conflict.id,
                    )

                appointment = Appointment(
                    doctor_id=request.doctor_id,
                    patient_id=request.patient_id,
                    service_id=request.service_id,
                    start_time=start_time,
                    end_time=end_time,
                    status=validated.status.value,
                    payment_status=validated.payment_status.value,
                    notes=request.notes,
                    idempotency_key=request.idempotency_key,
                )
                db.add(appointment)
                db.commit()
                db.refresh(appointment)
        except IntegrityError as exc:
            return self._resolve_integrity_error(request, validated, exc), False
        except OperationalError as exc:
            logger.warning('Booking transaction for doctor %s timed out: %s', request.doctor_id, exc)
            raise errors.BookingTimeout(
                'The booking could not be confirmed in time. Nothing was booked; retry with the same idempotency key.',
                doctor_id=request.doctor_id,
                idempotency_key=request.idempotency_key,
            ) from exc

        logger.info(
            'Booked appointment %s for doctor %s at %s (%s)',
            appointment.id,
            appointment.doctor_id,
            request.start_time.isoformat(),
            appointment.status,
        )
        return appointment, True

    def _resolve_integrity_error(
        self,
        request: _BookingRequest,
        validated: _ValidatedBooking,
        exc: IntegrityError,
    ) -> Appointment:
        # Either a concurrent replay won the idempotency key or the exclusion constraint fired.
        with self._session_factory() as db:
            existing = _find_by_key(db, request.idempotency_key)
            if existing is not None:
                return _replay(existing, request)

        logger.warning('Slot taken for doctor %s at %s (storage constraint)', request.doctor_id, request.start_time.isoformat())
        raise errors.SlotTaken(
            'The requested time was booked by someone else.',
            doctor_id=request.doctor_id,
            requested_start=request.start_time,
            requested_end=validated.end_time,
        ) from exc


def _normalize_key(idempotency_key: str | None) -> str:
    normalized = (idempotency_key or '').strip()
    if not normalized:
        raise errors.ValidationError('An idempotency key is required.')
    if len(normalized) > config.MAX_IDEMPOTENCY_KEY_LENGTH:
        raise errors.ValidationError(
            f'Idempotency keys must be {config.MAX_IDEMPOTENCY_KEY_LENGTH} characters or fewer.'
        )
    return normalized


def _normalize_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    normalized = notes.strip()
    if not normalized:
        return None
    if len(normalized) > config.MAX_APPOINTMENT_NOTES_LENGTH:
        raise errors.ValidationError(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')
    return normalized


def _find_by_key(db: Session, idempotency_key: str) -> Appointment | None:
    return db.query(Appointment).filter(Appointment.idempotency_key == idempotency_key).first()


def _replay(existing: Appointment, request: _BookingRequest) -> Appointment:
    same_request = (
        existing.doctor_id == request.doctor_id
        and existing.patient_id == request.patient_id
        and existing.service_id == request.service_id
        and as_utc(existing.start_time) == request.start_time
        and (request.end_time is None or as_utc(existing.end_time) == request.end_time)
    )
    if not same_request:
        raise errors.ValidationError(
            'Idempotency key was already used for a different booking.',
            idempotency_key=request.idempotency_key,
            appointment_id=existing.id,
        )

    logger.info('Replayed idempotency key %s -> appointment %s', request.idempotency_key, existing.id)
    return existing
