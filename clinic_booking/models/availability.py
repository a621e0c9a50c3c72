"""Availability model definitions."""

import enum

from sqlalchemy import CheckConstraint, Column, Date, ForeignKey, Integer, String, Time, UniqueConstraint

from clinic_booking.database import Base


class OverrideKind(str, enum.Enum):
    DAY_OFF = "DAY_OFF"
    CUSTOM_HOURS = "CUSTOM_HOURS"


class WeeklyAvailability(Base):
    """Represents one recurring working interval on a day of the week (0 = Sunday)."""
    __tablename__ = "weekly_availability"
    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_weekly_availability_day"),
        CheckConstraint("start_time < end_time", name="ck_weekly_availability_order"),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)


class AvailabilityOverride(Base):
    """Replaces the weekly template for a single calendar date."""
    __tablename__ = "availability_overrides"
    __table_args__ = (
        UniqueConstraint("doctor_id", "date", name="uq_availability_override_doctor_date"),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    date = Column(Date, nullable=False)
    kind = Column(String, nullable=False)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    reason = Column(String, nullable=True)

    @property
    def is_day_off(self) -> bool:
        return self.kind == OverrideKind.DAY_OFF.value
