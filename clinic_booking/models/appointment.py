"""Appointment model definitions."""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from clinic_booking.core.timeutil import to_storage, utc_now
from clinic_booking.database import Base


def _storage_now():
    return to_storage(utc_now())


class AppointmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PAY_AT_CLINIC = "PAY_AT_CLINIC"
    NOT_REQUIRED = "NOT_REQUIRED"


# Statuses that occupy time on a doctor's calendar.
BLOCKING_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.SCHEDULED.value)


class Appointment(Base):
    """Represents a committed booking. Rows are never deleted; cancellation is a status."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    patient_id = Column(Integer, nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    # Naive UTC instants.
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=AppointmentStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    notes = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    checked_in_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_storage_now)
    updated_at = Column(DateTime, nullable=False, default=_storage_now, onupdate=_storage_now)

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES
