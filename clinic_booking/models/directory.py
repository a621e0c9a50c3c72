"""Directory records the scheduling engine consumes by reference."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String

from clinic_booking.core import config
from clinic_booking.database import Base


class Clinic(Base):
    """Represents a clinic that hosts doctors and offers services."""
    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Doctor(Base):
    """Represents a doctor whose calendar the engine manages."""
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    timezone = Column(String, nullable=False, default=lambda: config.DEFAULT_DOCTOR_TIMEZONE)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Service(Base):
    """Represents a bookable service. Its duration sizes every slot."""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    name = Column(String, nullable=False, default="")
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
