import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value.strip())


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinic_booking.db")

CORS_ALLOW_ORIGINS = _get_list(os.getenv("CORS_ALLOW_ORIGINS"), ["http://localhost:4200"])

# Slot starts snap to this grid in the doctor's local time.
SLOT_GRANULARITY_MINUTES = _get_int(os.getenv("SLOT_GRANULARITY_MINUTES"), 15)
BOOKING_HORIZON_DAYS = _get_int(os.getenv("BOOKING_HORIZON_DAYS"), 30)
MIN_LEAD_MINUTES = _get_int(os.getenv("MIN_LEAD_MINUTES"), 60)
BOOKING_TIMEOUT_SECONDS = _get_int(os.getenv("BOOKING_TIMEOUT_SECONDS"), 5)

PAYMENT_GATE_ENABLED = _get_bool(os.getenv("PAYMENT_GATE_ENABLED"), default=True)

DEFAULT_DOCTOR_TIMEZONE = os.getenv("DEFAULT_DOCTOR_TIMEZONE", "Asia/Ho_Chi_Minh")

MAX_APPOINTMENT_NOTES_LENGTH = _get_int(os.getenv("MAX_APPOINTMENT_NOTES_LENGTH"), 600)
MAX_IDEMPOTENCY_KEY_LENGTH = 128


def validate_runtime_config() -> None:
    for name in ("SLOT_GRANULARITY_MINUTES", "BOOKING_HORIZON_DAYS", "BOOKING_TIMEOUT_SECONDS"):
        if globals()[name] <= 0:
            raise RuntimeError(f"{name} must be a positive integer.")
    if MIN_LEAD_MINUTES < 0:
        raise RuntimeError("MIN_LEAD_MINUTES cannot be negative.")
    try:
        ZoneInfo(DEFAULT_DOCTOR_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"Unknown DEFAULT_DOCTOR_TIMEZONE: {DEFAULT_DOCTOR_TIMEZONE}") from exc
