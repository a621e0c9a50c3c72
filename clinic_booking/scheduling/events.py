"""Appointment lifecycle events for notification, payment and chat subscribers."""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime
from threading import Lock
from typing import Callable

from clinic_booking.core.timeutil import as_utc, utc_now

logger = logging.getLogger(__name__)

APPOINTMENT_CREATED = 'AppointmentCreated'
APPOINTMENT_SCHEDULED = 'AppointmentScheduled'
APPOINTMENT_CANCELLED = 'AppointmentCancelled'
APPOINTMENT_COMPLETED = 'AppointmentCompleted'
APPOINTMENT_NO_SHOW = 'AppointmentNoShow'

ALL_EVENTS = '*'


@dataclass(frozen=True)
class AppointmentEvent:
    name: str
    appointment_id: int
    doctor_id: int
    patient_id: int
    start_time: datetime
    end_time: datetime
    occurred_at: datetime
    status: str

    @classmethod
    def from_appointment(cls, name: str, appointment, occurred_at: datetime | None = None) -> 'AppointmentEvent':
        return cls(
            name=name,
            appointment_id=appointment.id,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
            start_time=as_utc(appointment.start_time),
            end_time=as_utc(appointment.end_time),
            occurred_at=as_utc(occurred_at or utc_now()),
            status=appointment.status,
        )

    def to_dict(self) -> dict:
        payload = asdict(self)
        for key in ('start_time', 'end_time', 'occurred_at'):
            payload[key] = payload[key].isoformat()
        return payload


EventHandler = Callable[[AppointmentEvent], None]


class EventPublisher:
    """In-process fan-out. Events are published after the write has committed."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = Lock()

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers.get(event_name, []):
                self._handlers[event_name].remove(handler)

    def publish(self, event: AppointmentEvent) -> None:
        with self._lock:
            handlers = [*self._handlers.get(event.name, []), *self._handlers.get(ALL_EVENTS, [])]

        logger.info('Publishing %s for appointment %s', event.name, event.appointment_id)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # The appointment is already committed; a subscriber cannot undo it.
                logger.exception('Subscriber failed while handling %s for appointment %s', event.name, event.appointment_id)


default_publisher = EventPublisher()
