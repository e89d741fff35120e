"""Public confirmation link protocol.

A client holding an appointment's confirmation token can view it and
answer once (confirm or cancel) without logging in. The answer is
idempotent: once the appointment has left `pending`, every further answer
returns the settled status and changes nothing.
"""

import logging
from datetime import datetime
from typing import NamedTuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from salon_agenda.core.structured_logging import build_log_context
from salon_agenda.db.enums import AppointmentStatus, AuditAction, TokenResponse, TransitionActor
from salon_agenda.db.models import Appointment, AppointmentService
from salon_agenda.services import audit_service
from salon_agenda.services.appointment_lifecycle import apply_transition
from salon_agenda.services.errors import (
    AlreadyRespondedError, NotFoundError, TransientNetworkError, ValidationError,
)

logger = logging.getLogger(__name__)

RESPONSE_TARGETS = {
    TokenResponse.CONFIRM: AppointmentStatus.CONFIRMED,
    TokenResponse.CANCEL: AppointmentStatus.CANCELLED,
}


class AppointmentPublicView(NamedTuple):
    """What the confirmation page may show. No phone, email or notes."""
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


class RespondResult(NamedTuple):
    """
    Outcome of a token response.

    Either success=True with new_status, or already_responded=True with
    the status the appointment had settled in.
    """
    success: bool = False
    new_status: str | None = None
    already_responded: bool = False
    status: str | None = None


def _by_token(token: str):
    return select(Appointment).where(Appointment.confirmation_token == token)


def get_appointment_by_token(db: Session, token: str) -> AppointmentPublicView:
    """Public view of the appointment behind a confirmation token."""
    if not token:
        raise NotFoundError()
    appointment = db.scalar(
        _by_token(token).options(
            joinedload(Appointment.client),
            joinedload(Appointment.tenant),
            joinedload(Appointment.specialist),
            selectinload(Appointment.services).joinedload(AppointmentService.service),
        )
    )
    if not appointment:
        raise NotFoundError()

    tenant = appointment.tenant
    return AppointmentPublicView(
        id=appointment.id,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        status=appointment.status,
        confirmed_at=appointment.confirmed_at,
        client_name=appointment.client.name,
        service_names=[row.service.name for row in appointment.services],
        specialist_name=appointment.specialist.name if appointment.specialist else None,
        tenant_name=tenant.name,
        tenant_logo_url=tenant.logo_url,
        tenant_phone=tenant.phone,
        tenant_timezone=tenant.timezone,
    )


def _lock_by_token(db: Session, token: str) -> Appointment | None:
    if db.get_bind().dialect.name == "sqlite":
        # SQLite ignores FOR UPDATE; a no-op write takes the database lock instead
        db.execute(
            update(Appointment)
            .where(Appointment.confirmation_token == token)
            .values(updated_at=Appointment.updated_at)
            .execution_options(synchronize_session=False)
        )
    return db.scalar(
        _by_token(token).with_for_update().execution_options(populate_existing=True)
    )


def _apply_token_response(appointment: Appointment, response: TokenResponse) -> None:
    """Raises AlreadyRespondedError unless the appointment is still pending."""
    if appointment.status != AppointmentStatus.PENDING.value:
        raise AlreadyRespondedError(appointment.status)
    apply_transition(appointment, RESPONSE_TARGETS[response], TransitionActor.TOKEN)


def respond_by_token(db: Session, token: str, response: TokenResponse | str) -> RespondResult:
    """
    Confirm or cancel through the public link.

    The appointment row is locked (SELECT ... FOR UPDATE) for the whole
    read-decide-write so two concurrent answers cannot reach two outcomes.
    """
    try:
        response = TokenResponse(response)
    except ValueError:
        raise ValidationError("Respuesta invalida")

    try:
        appointment = _lock_by_token(db, token) if token else None
        if not appointment:
            db.rollback()
            raise NotFoundError()

        try:
            _apply_token_response(appointment, response)
        except AlreadyRespondedError as e:
            db.rollback()
            return RespondResult(already_responded=True, status=e.status)

        db.flush()
        audit_service.log_event(
            db,
            tenant_id=appointment.tenant_id,
            action=AuditAction.UPDATE,
            entity_type="appointment",
            entity_id=appointment.id,
            details={"status": {"from": AppointmentStatus.PENDING.value, "to": appointment.status},
                     "via": TransitionActor.TOKEN.value},
        )
        new_status = appointment.status
        tenant_id, appointment_id = appointment.tenant_id, appointment.id
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Token response failed: %s", e)
        raise TransientNetworkError() from e

    logger.info(
        "Client responded %s via link", response.value,
        extra=build_log_context(tenant_id=tenant_id, appointment_id=appointment_id),
    )
    return RespondResult(success=True, new_status=new_status)
