"""Public booking schemas - booking page, slots, token confirmation."""

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


# =============================================================================
# Booking page
# =============================================================================

class PublicServiceRead(BaseModel):
    """Catalog entry shown on the booking page."""
    id: UUID
    name: str
    duration: int
    price: Decimal


class BookingPageRead(BaseModel):
    """Tenant branding, hours and active services for /book/{slug}."""
    tenant_id: UUID
    name: str
    logo_url: str | None
    phone: str | None
    address: str | None
    timezone: str
    business_hours: dict | None
    booking_window_days: int
    services: list[PublicServiceRead]


class BookedSlotRead(BaseModel):
    start_time: datetime
    end_time: datetime


class SlotRead(BaseModel):
    """One bookable start. `time` is HH:MM in the tenant's timezone."""
    time: str
    start_time: datetime
    end_time: datetime


class AvailabilityRead(BaseModel):
    date: date
    slots: list[SlotRead]
    is_day_closed: bool


# =============================================================================
# Booking submission
# =============================================================================

class PublicBookingCreate(BaseModel):
    """Public booking request (one service)."""
    client_name: str = Field(..., min_length=1, max_length=255)
    client_phone: str = Field(..., min_length=6, max_length=50)
    client_email: EmailStr | None = None
    service_id: UUID
    start_time: datetime
    receipt_url: str | None = Field(None, max_length=1000)


class PublicBookingRead(BaseModel):
    """Shown on the success screen; the token builds the confirmation link."""
    appointment_id: UUID
    service_name: str
    start_time: datetime
    end_time: datetime
    price: Decimal
    confirmation_token: str


# =============================================================================
# Confirmation link
# =============================================================================

class AppointmentPublicRead(BaseModel):
    """Appointment as shown on the confirmation page."""
    id: UUID
    start_time: datetime
    end_time: datetime
    status: str
    confirmed_at: datetime | None
    client_name: str
    service_names: list[str]
    specialist_name: str | None
    tenant_name: str
    tenant_logo_url: str | None
    tenant_phone: str | None
    tenant_timezone: str


class TokenRespondRequest(BaseModel):
    response: Literal["confirm", "cancel"]


class TokenRespondResult(BaseModel):
    """Either {success, new_status} or {already_responded, status}."""
    success: bool | None = None
    new_status: str | None = None
    already_responded: bool | None = None
    status: str | None = None
