"""API routers."""

from salon_agenda.routers.appointments import router as appointments_router
from salon_agenda.routers.booking import router as booking_router
from salon_agenda.routers.confirm import router as confirm_router

__all__ = [
    "appointments_router",
    "booking_router",
    "confirm_router",
]
