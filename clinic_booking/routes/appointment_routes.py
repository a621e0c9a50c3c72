from datetime import date, datetime

from fastapi import APIRouter, Depends, Header, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from clinic_booking.core import config
from clinic_booking.core.timeutil import as_utc
from clinic_booking.models.appointment import Appointment, AppointmentStatus
from clinic_booking.routes.dependencies import (
    ensure_database_ready,
    get_booking_coordinator,
    get_db,
    get_lifecycle,
    translate_errors,
)
from clinic_booking.scheduling import stores
from clinic_booking.scheduling.booking import BookingCoordinator
from clinic_booking.scheduling.state_machine import ActorRole, AppointmentLifecycle

router = APIRouter(tags=['appointments'])


class CreateAppointmentRequest(BaseModel):
    doctor_id: int = Field(gt=0)
    patient_id: int = Field(gt=0)
    service_id: int = Field(gt=0)
    start_time: datetime
    idempotency_key: str | None = None
    notes: str | None = None

    @field_validator('start_time')
    @classmethod
    def normalize_start_time(cls, value: datetime) -> datetime:
        # Naive timestamps are read as UTC.
        return as_utc(value)

    @field_validator('idempotency_key')
    @classmethod
    def validate_idempotency_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > config.MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValueError(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

        return normalized


class ConfirmPaymentRequest(BaseModel):
    payment_reference: str | None = None


class CompleteAppointmentRequest(BaseModel):
    clinic_signal: bool = False


class CancelAppointmentRequest(BaseModel):
    actor_role: ActorRole = ActorRole.PATIENT
    reason: str | None = None


class AppointmentResponse(BaseModel):
    id: int
    doctor_id: int
    patient_id: int
    service_id: int
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: str
    payment_status: str
    notes: str | None = None
    idempotency_key: str
    checked_in_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> 'AppointmentResponse':
        start_time = as_utc(appointment.start_time)
        end_time = as_utc(appointment.end_time)
        return cls(
            id=appointment.id,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
            service_id=appointment.service_id,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=int((end_time - start_time).total_seconds() // 60),
            status=appointment.status,
            payment_status=appointment.payment_status,
            notes=appointment.notes,
            idempotency_key=appointment.idempotency_key,
            checked_in_at=as_utc(appointment.checked_in_at) if appointment.checked_in_at else None,
            cancelled_at=as_utc(appointment.cancelled_at) if appointment.cancelled_at else None,
            cancellation_reason=appointment.cancellation_reason,
            completed_at=as_utc(appointment.completed_at) if appointment.completed_at else None,
        )


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    idempotency_key: str | None = Header(default=None, alias='Idempotency-Key'),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
):
    ensure_database_ready()

    with translate_errors():
        appointment = coordinator.book(
            doctor_id=data.doctor_id,
            patient_id=data.patient_id,
            service_id=data.service_id,
            requested_start=data.start_time,
            idempotency_key=data.idempotency_key or idempotency_key,
            notes=data.notes,
        )
        return AppointmentResponse.from_appointment(appointment)


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    patient_id: int | None = Query(default=None, gt=0),
    doctor_id: int | None = Query(default=None, gt=0),
    appointment_status: AppointmentStatus | None = Query(default=None, alias='status'),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with translate_errors(db):
        appointments = stores.list_appointments(
            db,
            patient_id=patient_id,
            doctor_id=doctor_id,
            status=appointment_status,
            date_from=date_from,
            date_to=date_to,
        )
        return [AppointmentResponse.from_appointment(appointment) for appointment in appointments]


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(appointment_id: int, lifecycle: AppointmentLifecycle = Depends(get_lifecycle)):
    ensure_database_ready()

    with translate_errors():
        return AppointmentResponse.from_appointment(lifecycle.get(appointment_id))


@router.post('/{appointment_id}/confirm-payment', response_model=AppointmentResponse)
def confirm_payment(
    appointment_id: int,
    data: ConfirmPaymentRequest,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    ensure_database_ready()

    with translate_errors():
        return AppointmentResponse.from_appointment(lifecycle.confirm_payment(appointment_id, data.payment_reference))


@router.post('/{appointment_id}/pay-at-clinic', response_model=AppointmentResponse)
def acknowledge_pay_at_clinic(appointment_id: int, lifecycle: AppointmentLifecycle = Depends(get_lifecycle)):
    ensure_database_ready()

    with translate_errors():
        return AppointmentResponse.from_appointment(lifecycle.acknowledge_pay_at_clinic(appointment_id))


@router.post('/{appointment_id}/check-in', response_model=AppointmentResponse)
def check_in(appointment_id: int, lifecycle: AppointmentLifecycle = Depends(get_lifecycle)):
    ensure_database_ready()

    with translate_errors():
        return AppointmentResponse.from_appointment(lifecycle.check_in(appointment_id))


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    data: CompleteAppointmentRequest,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    ensure_database_ready()

    with translate_errors():
        return AppointmentResponse.from_appointment(lifecycle.complete(appointment_id, clinic_signal=data.clinic_signal))


@router.post('/{appointment_id}/no-show', response_model=AppointmentResponse)
def mark_no_show(appointment_id: int, lifecycle: AppointmentLifecycle = Depends(get_lifecycle)):
    ensure_database_ready()

    with translate_errors():
        return AppointmentResponse.from_appointment(lifecycle.mark_no_show(appointment_id))


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    ensure_database_ready()

    with translate_errors():
        return AppointmentResponse.from_appointment(
            lifecycle.cancel(appointment_id, actor=data.actor_role, reason=data.reason)
        )
