"""Shared test constants and time helpers."""

from datetime import date, datetime
from zoneinfo import ZoneInfo

from salon_agenda.services.availability_service import DAY_NAMES

TENANT_TZ = ZoneInfo("America/Guatemala")

ALL_WEEK_9_TO_5 = {
    day: {"enabled": True, "open": "09:00", "close": "17:00"} for day in DAY_NAMES
}


def local_dt(day: date, hhmm: str) -> datetime:
    """Tenant-local aware datetime for day at HH:MM."""
    hours, minutes = (int(part) for part in hhmm.split(":"))
    return datetime(day.year, day.month, day.day, hours, minutes, tzinfo=TENANT_TZ)
