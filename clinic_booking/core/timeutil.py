from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    # Ledger columns hold naive UTC so SQLite and PostgreSQL compare the same way.
    return as_utc(value).replace(tzinfo=None)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    return as_utc(instant).astimezone(tz).date()


def local_instant(day: date, time_of_day: time, tz: ZoneInfo) -> datetime:
    """Combine a local calendar date and wall-clock time into a UTC instant."""
    return datetime.combine(day, time_of_day, tzinfo=tz).astimezone(timezone.utc)


def day_of_week(day: date) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (day.weekday() + 1) % 7
