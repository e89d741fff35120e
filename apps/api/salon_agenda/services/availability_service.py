"""Availability service - free slot calculation for a tenant, date and service.

Pipeline:
- Candidate start times from business hours on a fixed grid
- Conflict filtering against booked intervals (half-open overlap)
- Same-day lookahead filtering (slots must start after now + lead)

Business hours are wall-clock HH:MM values interpreted in the tenant's
IANA timezone. Slots are returned as UTC instants plus the local label.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import NamedTuple
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from salon_agenda.core.config import settings
from salon_agenda.db.enums import NON_BLOCKING_STATUSES
from salon_agenda.db.models import Appointment, Tenant
from salon_agenda.services.errors import ValidationError

logger = logging.getLogger(__name__)

# Python weekday() order: Monday=0, Sunday=6
DAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


# =============================================================================
# Types
# =============================================================================

class TimeSlot(NamedTuple):
    """Candidate slot [start, end) in UTC."""
    start: datetime
    end: datetime
    local_time: str  # HH:MM in tenant timezone


class BookedSlot(NamedTuple):
    """Occupied interval projected from an existing appointment."""
    start_time: datetime
    end_time: datetime


class DayHours(NamedTuple):
    """Opening window for one weekday, in minutes since local midnight."""
    open_minutes: int
    close_minutes: int


class Availability(NamedTuple):
    """Result of an availability query."""
    date: date
    slots: list[TimeSlot]
    is_day_closed: bool


# =============================================================================
# Time helpers
# =============================================================================

def get_timezone(name: str | None) -> ZoneInfo:
    """Get a ZoneInfo timezone with safe fallback."""
    if not name:
        return ZoneInfo(settings.DEFAULT_TIMEZONE)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to %s", name, settings.DEFAULT_TIMEZONE)
        return ZoneInfo(settings.DEFAULT_TIMEZONE)


def parse_hhmm(value: str | time) -> int:
    """Parse an HH:MM wall-clock value into minutes since midnight (24:00 allowed)."""
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    try:
        hours_str, minutes_str = value.strip().split(":")[:2]
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid HH:MM value: {value!r}")
    if not (0 <= minutes < 60) or not (0 <= hours <= 24) or (hours == 24 and minutes):
        raise ValueError(f"Invalid HH:MM value: {value!r}")
    return hours * 60 + minutes


def format_minutes(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def normalize_start_time(start_time: datetime, tz: ZoneInfo) -> datetime:
    """Ensure start_time is timezone-aware and normalized to UTC.

    Naive values are wall-clock times in the tenant's timezone. Starts with
    seconds are rejected rather than rounded.
    """
    if start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=tz)
    if start_time.second or start_time.microsecond:
        raise ValidationError("La hora debe caer en un minuto exacto")
    return start_time.astimezone(timezone.utc)


def local_today(tz: ZoneInfo, now: datetime | None = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(tz).date()


def local_day_bounds(target_date: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC bounds [start, end) of a tenant-local calendar day."""
    start_local = datetime.combine(target_date, time.min, tzinfo=tz)
    end_local = datetime.combine(target_date + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def is_within_booking_window(target_date: date, today: date, window_days: int | None = None) -> bool:
    """Public bookings are accepted from today up to today + window."""
    window = settings.BOOKING_WINDOW_DAYS if window_days is None else window_days
    return today <= target_date <= today + timedelta(days=window)


# =============================================================================
# Business hours
# =============================================================================

def get_day_hours(business_hours: dict | None, target_date: date) -> DayHours | None:
    """Opening window for the weekday of target_date, or None when closed."""
    if not business_hours:
        return None
    day = business_hours.get(DAY_NAMES[target_date.weekday()])
    if not day or not day.get("enabled"):
        return None
    try:
        open_minutes = parse_hhmm(day["open"])
        close_minutes = parse_hhmm(day["close"])
    except (KeyError, ValueError):
        logger.warning("Malformed business hours for %s: %r", DAY_NAMES[target_date.weekday()], day)
        return None
    return DayHours(open_minutes, close_minutes)


def validate_business_hours(business_hours: dict) -> dict:
    """Normalize a business-hours payload; raises ValidationError on bad input."""
    normalized = {}
    for day_name, day in business_hours.items():
        key = day_name.lower()
        if key not in DAY_NAMES:
            raise ValidationError(f"Dia invalido: {day_name}")
        enabled = bool(day.get("enabled"))
        try:
            open_minutes = parse_hhmm(day.get("open", "09:00"))
            close_minutes = parse_hhmm(day.get("close", "17:00"))
        except ValueError as e:
            raise ValidationError(str(e))
        if enabled and open_minutes >= close_minutes:
            raise ValidationError(f"El horario de {key} cierra antes de abrir")
        normalized[key] = {
            "enabled": enabled,
            "open": format_minutes(open_minutes),
            "close": format_minutes(close_minutes),
        }
    return normalized


# =============================================================================
# Slot pipeline
# =============================================================================

def generate_time_slots(
    open_time: str | time,
    close_time: str | time,
    duration_minutes: int,
    granularity_minutes: int | None = None,
) -> list[time]:
    """
    Candidate start times t with t >= open and t + duration <= close.

    Steps by the granularity (not by duration) so slots start on fixed
    boundaries regardless of service length.
    """
    step = granularity_minutes or settings.SLOT_GRANULARITY_MINUTES
    open_total = parse_hhmm(open_time)
    close_total = parse_hhmm(close_time)
    if duration_minutes <= 0 or step <= 0 or open_total >= close_total:
        return []

    starts = []
    t = open_total
    while t + duration_minutes <= close_total:
        starts.append(time(t // 60, t % 60))
        t += step
    return starts


def intervals_overlap(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """Half-open overlap: touching boundaries do not conflict."""
    return a_start < b_end and a_end > b_start


def filter_conflicts(candidates: list[TimeSlot], booked: list[BookedSlot]) -> list[TimeSlot]:
    """Drop candidates overlapping any booked interval, preserving order."""
    return [
        slot for slot in candidates
        if not any(
            intervals_overlap(slot.start, slot.end, b.start_time, b.end_time)
            for b in booked
        )
    ]


def filter_lookahead(
    candidates: list[TimeSlot],
    now: datetime,
    lead_minutes: int | None = None,
) -> list[TimeSlot]:
    """Drop candidates starting at or before now + lead."""
    lead = settings.BOOKING_LEAD_MINUTES if lead_minutes is None else lead_minutes
    cutoff = now + timedelta(minutes=lead)
    return [slot for slot in candidates if slot.start > cutoff]


def build_candidates(
    target_date: date,
    starts: list[time],
    duration_minutes: int,
    tz: ZoneInfo,
) -> list[TimeSlot]:
    """Anchor wall-clock start times to the tenant timezone as UTC slots."""
    slots = []
    for start in starts:
        start_utc = datetime.combine(target_date, start, tzinfo=tz).astimezone(timezone.utc)
        slots.append(TimeSlot(
            start=start_utc,
            end=start_utc + timedelta(minutes=duration_minutes),
            local_time=start.strftime("%H:%M"),
        ))
    return slots


def get_booked_slots(
    db: Session,
    tenant_id: UUID,
    target_date: date,
    tz: ZoneInfo,
    exclude_appointment_id: UUID | None = None,
) -> list[BookedSlot]:
    """Intervals of time-occupying appointments touching a tenant-local day."""
    day_start, day_end = local_day_bounds(target_date, tz)
    stmt = (
        select(Appointment.start_time, Appointment.end_time)
        .where(
            Appointment.tenant_id == tenant_id,
            Appointment.start_time < day_end,
            Appointment.end_time > day_start,
            Appointment.status.not_in([s.value for s in NON_BLOCKING_STATUSES]),
        )
        .order_by(Appointment.start_time)
    )
    if exclude_appointment_id:
        stmt = stmt.where(Appointment.id != exclude_appointment_id)
    return [BookedSlot(start_time=row.start_time, end_time=row.end_time) for row in db.execute(stmt)]


def get_availability(
    db: Session,
    tenant: Tenant,
    target_date: date,
    duration_minutes: int,
    now: datetime | None = None,
    exclude_appointment_id: UUID | None = None,
) -> Availability:
    """
    Free slots for a service duration on a tenant-local date.

    Returns an empty list (not an error) when the business is closed or no
    slot survives filtering; is_day_closed tells the two apart. Past dates
    are never bookable.
    """
    tz = get_timezone(tenant.timezone)
    now = now or datetime.now(timezone.utc)
    today = local_today(tz, now)

    day_hours = get_day_hours(tenant.business_hours, target_date)
    if day_hours is None:
        return Availability(date=target_date, slots=[], is_day_closed=True)
    if target_date < today:
        return Availability(date=target_date, slots=[], is_day_closed=False)

    starts = generate_time_slots(
        format_minutes(day_hours.open_minutes),
        format_minutes(day_hours.close_minutes),
        duration_minutes,
    )
    candidates = build_candidates(target_date, starts, duration_minutes, tz)
    booked = get_booked_slots(db, tenant.id, target_date, tz, exclude_appointment_id)
    slots = filter_conflicts(candidates, booked)

    if target_date == today:
        slots = filter_lookahead(slots, now)

    return Availability(date=target_date, slots=slots, is_day_closed=False)


def is_offered_start(
    tenant: Tenant,
    start_utc: datetime,
    duration_minutes: int,
    now: datetime | None = None,
) -> bool:
    """Whether start_utc is a grid slot inside business hours (ignoring bookings)."""
    tz = get_timezone(tenant.timezone)
    now = now or datetime.now(timezone.utc)
    local_start = start_utc.astimezone(tz)
    target_date = local_start.date()
    day_hours = get_day_hours(tenant.business_hours, target_date)
    if day_hours is None:
        return False
    starts = generate_time_slots(
        format_minutes(day_hours.open_minutes),
        format_minutes(day_hours.close_minutes),
        duration_minutes,
    )
    candidates = build_candidates(target_date, starts, duration_minutes, tz)
    if target_date == local_today(tz, now):
        candidates = filter_lookahead(candidates, now)
    return any(slot.start == start_utc for slot in candidates)
