"""Public booking router - unauthenticated endpoints for the booking page.

Clients can:
- View the business, its hours and active services
- View booked intervals and free slots for a date
- Book a slot
"""

from datetime import date, datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from salon_agenda.core.config import settings
from salon_agenda.core.deps import get_db, http_error
from salon_agenda.core.rate_limit import PUBLIC_BOOKING_LIMIT, limiter
from salon_agenda.schemas.booking import (
    AvailabilityRead,
    BookedSlotRead,
    BookingPageRead,
    PublicBookingCreate,
    PublicBookingRead,
    PublicServiceRead,
    SlotRead,
)
from salon_agenda.services import availability_service, booking_service, catalog_service
from salon_agenda.services.errors import BookingError

router = APIRouter()


def _resolve_tenant(db: Session, slug: str):
    try:
        return catalog_service.resolve_tenant_by_slug(db, slug)
    except BookingError as e:
        raise http_error(e)


# =============================================================================
# Booking page
# =============================================================================

@router.get("/{slug}", response_model=BookingPageRead)
def get_booking_page(
    slug: str,
    db: Session = Depends(get_db),
):
    """Branding, business hours and bookable services."""
    tenant = _resolve_tenant(db, slug)
    services = catalog_service.list_active_services(db, tenant.id)
    return BookingPageRead(
        tenant_id=tenant.id,
        name=tenant.name,
        logo_url=tenant.logo_url,
        phone=tenant.phone,
        address=tenant.address,
        timezone=tenant.timezone,
        business_hours=tenant.business_hours,
        booking_window_days=settings.BOOKING_WINDOW_DAYS,
        services=[
            PublicServiceRead(id=s.id, name=s.name, duration=s.duration, price=s.price)
            for s in services
        ],
    )


@router.get("/{slug}/booked-slots", response_model=list[BookedSlotRead])
def get_booked_slots(
    slug: str,
    target_date: date = Query(..., alias="date", description="Date (YYYY-MM-DD), tenant-local"),
    db: Session = Depends(get_db),
):
    """Occupied intervals on a date (no client data)."""
    tenant = _resolve_tenant(db, slug)
    tz = availability_service.get_timezone(tenant.timezone)
    booked = availability_service.get_booked_slots(db, tenant.id, target_date, tz)
    return [BookedSlotRead(start_time=b.start_time, end_time=b.end_time) for b in booked]


@router.get("/{slug}/availability", response_model=AvailabilityRead)
def get_availability(
    slug: str,
    service_id: UUID,
    target_date: date = Query(..., alias="date", description="Date (YYYY-MM-DD), tenant-local"),
    db: Session = Depends(get_db),
):
    """
    Free slots for a service on a date.

    Dates outside today..today+window return no slots; a closed day sets
    is_day_closed.
    """
    tenant = _resolve_tenant(db, slug)
    service = catalog_service.get_service(db, tenant.id, service_id)
    if not service or not service.is_active:
        raise HTTPException(status_code=404, detail="Servicio no disponible")

    now = datetime.now(timezone.utc)
    tz = availability_service.get_timezone(tenant.timezone)
    today = availability_service.local_today(tz, now)
    if not availability_service.is_within_booking_window(target_date, today):
        return AvailabilityRead(date=target_date, slots=[], is_day_closed=False)

    result = availability_service.get_availability(db, tenant, target_date, service.duration, now=now)
    return AvailabilityRead(
        date=result.date,
        slots=[SlotRead(time=s.local_time, start_time=s.start, end_time=s.end) for s in result.slots],
        is_day_closed=result.is_day_closed,
    )


# =============================================================================
# Booking submission
# =============================================================================

@router.post("/{slug}", response_model=PublicBookingRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(PUBLIC_BOOKING_LIMIT)
def create_booking(
    slug: str,
    data: PublicBookingCreate,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Book a slot.

    409 "Horario no disponible" when someone else took the slot after the
    page loaded; the client must pick another slot.
    """
    try:
        result = booking_service.create_public_booking(
            db,
            slug=slug,
            client_name=data.client_name,
            client_phone=data.client_phone,
            client_email=data.client_email,
            service_id=data.service_id,
            start_time=data.start_time,
            receipt_url=data.receipt_url,
        )
    except BookingError as e:
        raise http_error(e)
    return PublicBookingRead(**result._asdict())
