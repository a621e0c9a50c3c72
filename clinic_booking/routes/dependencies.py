import logging
from contextlib import contextmanager

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.core import errors
from clinic_booking.database import SessionLocal, ensure_booking_schema
from clinic_booking.scheduling.booking import BookingCoordinator
from clinic_booking.scheduling.events import default_publisher
from clinic_booking.scheduling.state_machine import AppointmentLifecycle

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'

ERROR_STATUS_CODES = {
    errors.ValidationError: status.HTTP_400_BAD_REQUEST,
    errors.HorizonExceeded: status.HTTP_400_BAD_REQUEST,
    errors.LeadTimeViolation: status.HTTP_400_BAD_REQUEST,
    errors.NotFound: status.HTTP_404_NOT_FOUND,
    errors.SlotTaken: status.HTTP_409_CONFLICT,
    errors.InvalidTransition: status.HTTP_409_CONFLICT,
    errors.BookingTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_exception(exc: errors.SchedulingError) -> HTTPException:
    status_code = ERROR_STATUS_CODES.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=exc.to_dict())


@contextmanager
def translate_errors(db: Session | None = None):
    """Turn scheduling and database errors into HTTP errors."""
    try:
        yield
    except errors.SchedulingError as exc:
        if db is not None:
            db.rollback()
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        if db is not None:
            db.rollback()
        logger.exception('Database error while handling request')
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_booking_coordinator() -> BookingCoordinator:
    return BookingCoordinator(SessionLocal, events=default_publisher)


def get_lifecycle() -> AppointmentLifecycle:
    return AppointmentLifecycle(SessionLocal, events=default_publisher)
