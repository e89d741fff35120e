"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    Staff roles.

    - OWNER: Business owner (hard deletes, settings)
    - STAFF: Front desk / specialists (agenda management)
    """

    OWNER = "owner"
    STAFF = "staff"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


class AppointmentStatus(str, Enum):
    """
    Appointment lifecycle status.

    Flow: pending → confirmed → in_room → completed
              ↘ cancelled
              ↘ no_show
    """

    PENDING = "pending"  # Booked, awaiting client confirmation
    CONFIRMED = "confirmed"  # Confirmed by client or staff
    IN_ROOM = "in_room"  # Client is being attended
    COMPLETED = "completed"  # Service delivered, price frozen
    CANCELLED = "cancelled"  # Cancelled by client or staff
    NO_SHOW = "no_show"  # Client didn't show up


class AppointmentSource(str, Enum):
    """Where an appointment was created."""

    STAFF = "staff"
    PUBLIC = "public"


class TransitionActor(str, Enum):
    """Who triggers a lifecycle transition."""

    STAFF = "staff"
    TOKEN = "token"  # Client acting through the public confirmation link


class TokenResponse(str, Enum):
    """Client responses accepted on the public confirmation link."""

    CONFIRM = "confirm"
    CANCEL = "cancel"


class AuditAction(str, Enum):
    """Audit log actions."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Statuses after which no lifecycle transition is permitted
TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

# Statuses that free the time slot for other bookings
NON_BLOCKING_STATUSES = frozenset({
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

# Default appointment status
DEFAULT_APPOINTMENT_STATUS = AppointmentStatus.PENDING

ROLES_CAN_HARD_DELETE = frozenset({Role.OWNER})
