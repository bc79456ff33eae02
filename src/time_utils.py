"""Time zone helpers for UTC storage and clinic-local calendar days."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import settings


def get_local_timezone(timezone_name: str | None = None) -> ZoneInfo:
    """Return the configured clinic timezone, or the named override."""
    timezone_name = timezone_name or settings.clinic.timezone
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Invalid timezone: {timezone_name}") from exc


def to_local(value: datetime, tz: ZoneInfo | None = None) -> datetime:
    """Convert a datetime to the clinic timezone.

    Naive datetimes are interpreted as already being in the clinic timezone.
    """
    local_tz = tz or get_local_timezone()
    if value.tzinfo is None:
        return value.replace(tzinfo=local_tz)
    return value.astimezone(local_tz)


def to_utc(value: datetime) -> datetime:
    """Convert a datetime to UTC."""
    local_value = to_local(value)
    return local_value.astimezone(timezone.utc)


def local_day(value: datetime, tz: ZoneInfo | None = None) -> date:
    """Return the clinic-local calendar day a timestamp falls on."""
    return to_local(value, tz).date()


def local_day_bounds(day: date, tz: ZoneInfo | None = None) -> tuple[datetime, datetime]:
    """Return the UTC [start, end) bounds of a clinic-local calendar day."""
    local_tz = tz or get_local_timezone()
    start = datetime.combine(day, time.min, tzinfo=local_tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=local_tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
