"""Pydantic schemas for API request/response models."""

from salon_agenda.schemas.auth import StaffSession
from salon_agenda.schemas.appointment import (
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentRead,
    AppointmentServiceRead,
    AppointmentUpdate,
    StatusChange,
    WhatsAppLinkRead,
)
from salon_agenda.schemas.booking import (
    AppointmentPublicRead,
    AvailabilityRead,
    BookedSlotRead,
    BookingPageRead,
    PublicBookingCreate,
    PublicBookingRead,
    PublicServiceRead,
    SlotRead,
    TokenRespondRequest,
    TokenRespondResult,
)

__all__ = [
    "StaffSession",
    "AppointmentCreate",
    "AppointmentListResponse",
    "AppointmentRead",
    "AppointmentServiceRead",
    "AppointmentUpdate",
    "StatusChange",
    "WhatsAppLinkRead",
    "AppointmentPublicRead",
    "AvailabilityRead",
    "BookedSlotRead",
    "BookingPageRead",
    "PublicBookingCreate",
    "PublicBookingRead",
    "PublicServiceRead",
    "SlotRead",
    "TokenRespondRequest",
    "TokenRespondResult",
]
