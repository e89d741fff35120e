"""Appointment schemas - Pydantic models for the staff agenda API."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from salon_agenda.db.enums import AppointmentStatus


class AppointmentCreate(BaseModel):
    """Staff booking. end_time and price are derived from the services."""
    client_id: UUID
    service_ids: list[UUID] = Field(..., min_length=1)
    start_time: datetime
    specialist_id: UUID | None = None
    cabin_id: UUID | None = None
    notes: str | None = Field(None, max_length=2000)


class AppointmentUpdate(BaseModel):
    """Partial edit; omitted fields are kept, null clears optional ones."""
    client_id: UUID | None = None
    service_ids: list[UUID] | None = Field(None, min_length=1)
    start_time: datetime | None = None
    specialist_id: UUID | None = None
    cabin_id: UUID | None = None
    notes: str | None = Field(None, max_length=2000)


class StatusChange(BaseModel):
    status: AppointmentStatus


class AppointmentServiceRead(BaseModel):
    service_id: UUID
    name: str
    price_at_time: Decimal
    duration_at_time: int


class AppointmentRead(BaseModel):
    id: UUID
    client_id: UUID
    client_name: str
    client_phone: str | None
    specialist_id: UUID | None
    specialist_name: str | None
    cabin_id: UUID | None
    cabin_name: str | None
    start_time: datetime
    end_time: datetime
    status: str
    notes: str | None
    total_price: Decimal
    source: str
    receipt_url: str | None
    confirmed_at: datetime | None
    reminder_sent_at: datetime | None
    services: list[AppointmentServiceRead]
    created_at: datetime
    updated_at: datetime


class AppointmentListResponse(BaseModel):
    items: list[AppointmentRead]
    total: int


class WhatsAppLinkRead(BaseModel):
    url: str
