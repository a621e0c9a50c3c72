from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from clinic_booking.core.timeutil import as_utc, utc_now
from clinic_booking.models.availability import OverrideKind
from clinic_booking.routes.dependencies import ensure_database_ready, get_db, translate_errors
from clinic_booking.scheduling import stores
from clinic_booking.scheduling.slot_resolver import build_schedule, list_available_dates, resolve_slots

router = APIRouter(tags=['availability'])


class SlotResponse(BaseModel):
    date: date
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    display_time: str
    period: str


class AvailableDateResponse(BaseModel):
    date: date
    slot_count: int
    first_start_time: datetime


class WeeklyAvailabilityRequest(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time

    @model_validator(mode='after')
    def validate_order(self) -> 'WeeklyAvailabilityRequest':
        if self.start_time >= self.end_time:
            raise ValueError('Start time must be before end time.')
        return self


class WeeklyAvailabilityResponse(BaseModel):
    id: int
    doctor_id: int
    day_of_week: int
    start_time: time
    end_time: time

    class Config:
        from_attributes = True


class OverrideRequest(BaseModel):
    kind: OverrideKind
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @model_validator(mode='after')
    def validate_hours(self) -> 'OverrideRequest':
        if self.kind is OverrideKind.CUSTOM_HOURS:
            if self.start_time is None or self.end_time is None:
                raise ValueError('Custom hours need both a start and an end time.')
            if self.start_time >= self.end_time:
                raise ValueError('Start time must be before end time.')
        elif self.start_time is not None or self.end_time is not None:
            raise ValueError('A day off cannot carry working hours.')
        return self


class OverrideResponse(BaseModel):
    id: int
    doctor_id: int
    date: date
    kind: OverrideKind
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None

    class Config:
        from_attributes = True


class TemplateIntervalResponse(BaseModel):
    start_time: time
    end_time: time


class TimeRangeResponse(BaseModel):
    start_time: datetime
    end_time: datetime


class BookedSlotResponse(BaseModel):
    appointment_id: int
    patient_id: int
    service_id: int
    start_time: datetime
    end_time: datetime
    status: str


class ScheduleDayResponse(BaseModel):
    date: date
    day_of_week: int
    template: list[TemplateIntervalResponse]
    override: OverrideResponse | None = None
    working_hours: list[TimeRangeResponse]
    is_off: bool
    booked: list[BookedSlotResponse]


@router.get('/doctors/{doctor_id}/slots', response_model=list[SlotResponse])
def get_available_slots(
    doctor_id: int,
    service_id: int = Query(...),
    date_from: date = Query(...),
    date_to: date = Query(...),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with translate_errors(db):
        service = stores.get_bookable_service(db, stores.get_doctor(db, doctor_id), service_id)
        days = resolve_slots(db, doctor_id, date_from, date_to, service.duration_minutes, now=utc_now())

        return [
            SlotResponse(
                date=day.date,
                start_time=slot.start_time,
                end_time=slot.end_time,
                duration_minutes=slot.duration_minutes,
                display_time=slot.display_time,
                period=slot.period,
            )
            for day in days
            for slot in day.slots
        ]


@router.get('/doctors/{doctor_id}/available-dates', response_model=list[AvailableDateResponse])
def get_available_dates(
    doctor_id: int,
    service_id: int = Query(...),
    date_from: date = Query(...),
    date_to: date = Query(...),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with translate_errors(db):
        service = stores.get_bookable_service(db, stores.get_doctor(db, doctor_id), service_id)
        days = list_available_dates(db, doctor_id, date_from, date_to, service.duration_minutes, now=utc_now())

        return [
            AvailableDateResponse(date=day.date, slot_count=len(day.slots), first_start_time=day.slots[0].start_time)
            for day in days
        ]


@router.get('/doctors/{doctor_id}/schedule', response_model=list[ScheduleDayResponse])
def get_doctor_schedule(
    doctor_id: int,
    date_from: date = Query(...),
    date_to: date = Query(...),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with translate_errors(db):
        return [
            ScheduleDayResponse(
                date=day.date,
                day_of_week=day.day_of_week,
                template=[TemplateIntervalResponse(start_time=start, end_time=end) for start, end in day.template],
                override=OverrideResponse.model_validate(day.override) if day.override else None,
                working_hours=[
                    TimeRangeResponse(start_time=interval.start, end_time=interval.end)
                    for interval in day.working
                ],
                is_off=day.is_off,
                booked=[
                    BookedSlotResponse(
                        appointment_id=appointment.id,
                        patient_id=appointment.patient_id,
                        service_id=appointment.service_id,
                        start_time=as_utc(appointment.start_time),
                        end_time=as_utc(appointment.end_time),
                        status=appointment.status,
                    )
                    for appointment in day.booked
                ],
            )
            for day in build_schedule(db, doctor_id, date_from, date_to)
        ]


@router.get('/doctors/{doctor_id}/weekly', response_model=list[WeeklyAvailabilityResponse])
def list_weekly_availability(doctor_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with translate_errors(db):
        stores.get_doctor(db, doctor_id)
        return stores.list_weekly_availability(db, doctor_id)


@router.post(
    '/doctors/{doctor_id}/weekly',
    response_model=WeeklyAvailabilityResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_weekly_availability(doctor_id: int, data: WeeklyAvailabilityRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with translate_errors(db):
        row = stores.add_weekly_availability(db, doctor_id, data.day_of_week, data.start_time, data.end_time)
        db.commit()
        db.refresh(row)
        return row


@router.delete('/doctors/{doctor_id}/weekly', status_code=status.HTTP_204_NO_CONTENT)
def clear_weekly_availability(
    doctor_id: int,
    day_of_week: int | None = Query(default=None, ge=0, le=6),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with translate_errors(db):
        stores.clear_weekly_availability(db, doctor_id, day_of_week)
        db.commit()


@router.put('/doctors/{doctor_id}/overrides/{override_date}', response_model=OverrideResponse)
def set_override(doctor_id: int, override_date: date, data: OverrideRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with translate_errors(db):
        override = stores.set_override(
            db,
            doctor_id,
            override_date,
            data.kind,
            start_time=data.start_time,
            end_time=data.end_time,
            reason=data.reason,
        )
        db.commit()
        db.refresh(override)
        return override


@router.delete('/doctors/{doctor_id}/overrides/{override_date}', status_code=status.HTTP_204_NO_CONTENT)
def remove_override(doctor_id: int, override_date: date, db: Session = Depends(get_db)):
    ensure_database_ready()

    with translate_errors(db):
        stores.remove_override(db, doctor_id, override_date)
        db.commit()
