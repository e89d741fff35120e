"""Appointment lifecycle - allowed status transitions per actor.

    from                 to           actors
    pending              confirmed    staff, token
    pending, confirmed   cancelled    staff, token
    pending, confirmed   in_room      staff
    confirmed, in_room   completed    staff
    pending, confirmed   no_show      staff

completed, cancelled and no_show are terminal. The "token" actor is the
client acting through the public confirmation link.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from salon_agenda.core.structured_logging import build_log_context
from salon_agenda.db.enums import (
    TERMINAL_STATUSES, AppointmentStatus, AuditAction, TransitionActor
)
from salon_agenda.db.models import Appointment, utc_now
from salon_agenda.services import audit_service
from salon_agenda.services.booking_service import lock_appointment
from salon_agenda.services.errors import (
    BookingError, InvalidTransitionError, TransientNetworkError,
)

logger = logging.getLogger(__name__)

S = AppointmentStatus
STAFF = frozenset({TransitionActor.STAFF})
STAFF_OR_TOKEN = frozenset({TransitionActor.STAFF, TransitionActor.TOKEN})

# (from, to) -> actors allowed to make the move
ALLOWED_TRANSITIONS: dict[tuple[AppointmentStatus, AppointmentStatus], frozenset[TransitionActor]] = {
    (S.PENDING, S.CONFIRMED): STAFF_OR_TOKEN,
    (S.PENDING, S.CANCELLED): STAFF_OR_TOKEN,
    (S.CONFIRMED, S.CANCELLED): STAFF_OR_TOKEN,
    (S.PENDING, S.IN_ROOM): STAFF,
    (S.CONFIRMED, S.IN_ROOM): STAFF,
    (S.IN_ROOM, S.COMPLETED): STAFF,
    (S.CONFIRMED, S.COMPLETED): STAFF,
    (S.PENDING, S.NO_SHOW): STAFF,
    (S.CONFIRMED, S.NO_SHOW): STAFF,
}


def can_transition(
    current: AppointmentStatus | str,
    target: AppointmentStatus | str,
    actor: TransitionActor | str,
) -> bool:
    try:
        key = (AppointmentStatus(current), AppointmentStatus(target))
        actor = TransitionActor(actor)
    except ValueError:
        return False
    return actor in ALLOWED_TRANSITIONS.get(key, frozenset())


def is_terminal(status: AppointmentStatus | str) -> bool:
    return AppointmentStatus(status) in TERMINAL_STATUSES


def apply_transition(
    appointment: Appointment,
    target: AppointmentStatus,
    actor: TransitionActor,
    now: datetime | None = None,
) -> Appointment:
    """
    Move appointment to target status in memory (caller commits).

    Every transition stamps updated_at; client responses through the
    confirmation link also stamp confirmed_at.

    Raises:
        InvalidTransitionError: edge not allowed for this actor
    """
    if not can_transition(appointment.status, target, actor):
        raise InvalidTransitionError(
            current=appointment.status,
            target=str(getattr(target, "value", target)),
            actor=str(getattr(actor, "value", actor)),
        )
    now = now or utc_now()
    appointment.status = AppointmentStatus(target).value
    appointment.updated_at = now
    if TransitionActor(actor) == TransitionActor.TOKEN:
        appointment.confirmed_at = now
    return appointment


def change_status(
    db: Session,
    appointment: Appointment,
    target: AppointmentStatus,
    session,
) -> Appointment:
    """
    Staff status change: lock, validate, apply, audit and commit.

    The transition is checked against the row as committed, so a client who
    answered the confirmation link in the meantime is never overwritten.
    """
    appointment_id = appointment.id
    try:
        appointment = lock_appointment(db, session.tenant_id, appointment_id)
        previous = appointment.status
        apply_transition(appointment, target, TransitionActor.STAFF)
        db.flush()
        audit_service.log_event(
            db,
            tenant_id=session.tenant_id,
            action=AuditAction.UPDATE,
            entity_type="appointment",
            entity_id=appointment.id,
            details={"status": {"from": previous, "to": appointment.status}},
            user_id=session.user_id,
        )
        db.commit()
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Status change failed: %s", e,
            extra=build_log_context(tenant_id=session.tenant_id, appointment_id=appointment_id),
        )
        raise TransientNetworkError() from e

    logger.info(
        "Appointment %s -> %s", previous, appointment.status,
        extra=build_log_context(
            tenant_id=session.tenant_id, user_id=session.user_id, appointment_id=appointment.id
        ),
    )
    db.refresh(appointment)
    return appointment
