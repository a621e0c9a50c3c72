"""Appointment lifecycle after a booking is committed.

PENDING -> SCHEDULED -> COMPLETED
PENDING | SCHEDULED -> CANCELLED
SCHEDULED -> NO_SHOW

COMPLETED, CANCELLED and NO_SHOW are terminal. Moves that are not on an edge,
or whose guard fails, raise ``InvalidTransition``.
"""

import enum
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from clinic_booking.core import errors
from clinic_booking.core.timeutil import as_utc, to_storage, utc_now
from clinic_booking.database import WRITE_TRANSACTION_OPTIONS
from clinic_booking.models.appointment import Appointment, AppointmentStatus, PaymentStatus
from clinic_booking.scheduling import stores
from clinic_booking.scheduling.events import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_COMPLETED,
    APPOINTMENT_NO_SHOW,
    APPOINTMENT_SCHEDULED,
    AppointmentEvent,
    EventPublisher,
    default_publisher,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELLED},
    AppointmentStatus.SCHEDULED: {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW},
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

CHECKED_IN = 'CHECKED_IN'


class ActorRole(str, enum.Enum):
    PATIENT = 'patient'
    DOCTOR = 'doctor'
    ADMIN = 'admin'


# Roles allowed to cancel after the start time, until the appointment ends.
OPERATIONAL_ROLES = {ActorRole.DOCTOR, ActorRole.ADMIN}


def can_transition(current: AppointmentStatus | str, target: AppointmentStatus | str) -> bool:
    return AppointmentStatus(target) in ALLOWED_TRANSITIONS[AppointmentStatus(current)]


def ensure_transition(appointment: Appointment, target: AppointmentStatus) -> None:
    if not can_transition(appointment.status, target):
        raise errors.InvalidTransition(appointment.id, appointment.status, target.value)


class AppointmentLifecycle:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._events = events or default_publisher
        self._clock = clock

    def get(self, appointment_id: int) -> Appointment:
        with self._session_factory() as db:
            return stores.get_appointment(db, appointment_id)

    def confirm_payment(self, appointment_id: int, payment_reference: str | None = None) -> Appointment:
        """Payment collaborator confirmed the charge: PENDING -> SCHEDULED."""

        def mutate(appointment: Appointment, now: datetime) -> None:
            ensure_transition(appointment, AppointmentStatus.SCHEDULED)
            appointment.status = AppointmentStatus.SCHEDULED.value
            appointment.payment_status = PaymentStatus.PAID.value
            appointment.payment_reference = payment_reference

        return self._apply(appointment_id, mutate, APPOINTMENT_SCHEDULED)

    def acknowledge_pay_at_clinic(self, appointment_id: int) -> Appointment:
        def mutate(appointment: Appointment, now: datetime) -> None:
            ensure_transition(appointment, AppointmentStatus.SCHEDULED)
            appointment.status = AppointmentStatus.SCHEDULED.value
            appointment.payment_status = PaymentStatus.PAY_AT_CLINIC.value

        return self._apply(appointment_id, mutate, APPOINTMENT_SCHEDULED)

    def check_in(self, appointment_id: int) -> Appointment:
        """Record clinic arrival. Not a status change, but it rules out NO_SHOW."""

        def mutate(appointment: Appointment, now: datetime) -> None:
            if appointment.status != AppointmentStatus.SCHEDULED.value:
                raise errors.InvalidTransition(appointment.id, appointment.status, CHECKED_IN)
            if appointment.checked_in_at is None:
                appointment.checked_in_at = to_storage(now)

        return self._apply(appointment_id, mutate, None)

    def complete(self, appointment_id: int, clinic_signal: bool = False) -> Appointment:
        def mutate(appointment: Appointment, now: datetime) -> None:
            ensure_transition(appointment, AppointmentStatus.COMPLETED)
            if not clinic_signal and now < as_utc(appointment.end_time):
                raise errors.InvalidTransition(
                    appointment.id,
                    appointment.status,
                    AppointmentStatus.COMPLETED.value,
                    message='Appointment cannot be completed before it ends without a clinic completion signal.',
                )
            appointment.status = AppointmentStatus.COMPLETED.value
            appointment.completed_at = to_storage(now)

        return self._apply(appointment_id, mutate, APPOINTMENT_COMPLETED)

    def mark_no_show(self, appointment_id: int) -> Appointment:
        def mutate(appointment: Appointment, now: datetime) -> None:
            ensure_transition(appointment, AppointmentStatus.NO_SHOW)
            if now <= as_utc(appointment.start_time):
                raise errors.InvalidTransition(
                    appointment.id,
                    appointment.status,
                    AppointmentStatus.NO_SHOW.value,
                    message='A no-show can only be recorded after the appointment start time.',
                )
            if appointment.checked_in_at is not None:
                raise errors.InvalidTransition(
                    appointment.id,
                    appointment.status,
                    AppointmentStatus.NO_SHOW.value,
                    message='Patient already checked in.',
                )
            appointment.status = AppointmentStatus.NO_SHOW.value

        return self._apply(appointment_id, mutate, APPOINTMENT_NO_SHOW)

    def cancel(
        self,
        appointment_id: int,
        actor: ActorRole = ActorRole.PATIENT,
        reason: str | None = None,
    ) -> Appointment:
        """Cancel and release the interval back to the slot resolver.

        Patients must cancel strictly before the start time. Doctors and admins
        may cancel for operational reasons until the appointment ends.
        """
        actor = ActorRole(actor)

        def mutate(appointment: Appointment, now: datetime) -> None:
            ensure_transition(appointment, AppointmentStatus.CANCELLED)
            deadline = appointment.end_time if actor in OPERATIONAL_ROLES else appointment.start_time
            if now >= as_utc(deadline):
                raise errors.InvalidTransition(
                    appointment.id,
                    appointment.status,
                    AppointmentStatus.CANCELLED.value,
                    message=f'Cancellation window has closed for {actor.value}.',
                )
            appointment.status = AppointmentStatus.CANCELLED.value
            appointment.cancelled_at = to_storage(now)
            appointment.cancellation_reason = (reason or '').strip() or None

        return self._apply(appointment_id, mutate, APPOINTMENT_CANCELLED)

    def _apply(
        self,
        appointment_id: int,
        mutate: Callable[[Appointment, datetime], None],
        event_name: str | None,
    ) -> Appointment:
        with self._session_factory() as db:
            db.connection(execution_options=WRITE_TRANSACTION_OPTIONS)
            appointment = stores.get_appointment(db, appointment_id, for_update=True)
            previous_status = appointment.status

            mutate(appointment, as_utc(self._clock()))

            db.commit()
            db.refresh(appointment)

        if appointment.status != previous_status:
            logger.info('Appointment %s moved %s -> %s', appointment.id, previous_status, appointment.status)
        if event_name is not None:
            self._events.publish(AppointmentEvent.from_appointment(event_name, appointment))
        return appointment
