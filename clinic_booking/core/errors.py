"""Error kinds raised by the scheduling engine.

Every error carries a ``kind`` string and the identifiers that caused it so
callers can decide whether to retry, prompt the user, or treat the failure as
a bug. Only ``SlotTaken`` and ``BookingTimeout`` are worth retrying, and only
after re-resolving slots (``SlotTaken``) or with the same idempotency key
(``BookingTimeout``).
"""


class SchedulingError(Exception):
    kind = "SchedulingError"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "message": self.message}
        payload.update({key: _jsonable(value) for key, value in self.details.items()})
        return payload


class ValidationError(SchedulingError):
    """Malformed or out-of-policy input. Never retried as-is."""

    kind = "ValidationError"


class NotFound(SchedulingError):
    kind = "NotFound"

    def __init__(self, entity: str, entity_id, message: str | None = None):
        super().__init__(message or f"{entity} {entity_id} not found.", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class HorizonExceeded(SchedulingError):
    kind = "HorizonExceeded"


class LeadTimeViolation(SchedulingError):
    kind = "LeadTimeViolation"


class SlotTaken(SchedulingError):
    """Lost the race for an interval. Re-resolve slots and pick another one."""

    kind = "SlotTaken"
    retryable = True


class BookingTimeout(SchedulingError):
    """The booking transaction did not finish in time and nothing was committed."""

    kind = "BookingTimeout"
    retryable = True


class InvalidTransition(SchedulingError):
    kind = "InvalidTransition"

    def __init__(self, appointment_id, current: str, requested: str, message: str | None = None):
        super().__init__(
            message or f"Cannot move appointment {appointment_id} from {current} to {requested}.",
            appointment_id=appointment_id,
            current=current,
            requested=requested,
        )
        self.appointment_id = appointment_id
        self.current = current
        self.requested = requested


def _jsonable(value):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value
