"""Booking service - atomic appointment writes.

Booking correctness does not depend on the availability a client saw:
every write takes the per-tenant booking lock, re-checks overlap and
inserts in one transaction. A conflicting request fails with
SlotTakenError and is never moved to another slot.

Lock: `UPDATE tenants SET booking_seq = booking_seq + 1` as the first
write of the transaction. PostgreSQL holds the row lock until commit;
SQLite holds its database write lock, so a second writer waits
(busy timeout) and then reads the committed winner.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import NamedTuple
from urllib.parse import quote
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from salon_agenda.core.config import settings
from salon_agenda.core.security import generate_confirmation_token
from salon_agenda.core.structured_logging import build_log_context
from salon_agenda.db.enums import (
    NON_BLOCKING_STATUSES, ROLES_CAN_HARD_DELETE, TERMINAL_STATUSES, AppointmentSource,
    AppointmentStatus, AuditAction,
)
from salon_agenda.db.models import Appointment, AppointmentService, Tenant, utc_now
from salon_agenda.services import audit_service, catalog_service
from salon_agenda.services.availability_service import (
    get_timezone, is_offered_start, is_within_booking_window, local_today,
    normalize_start_time,
)
from salon_agenda.services.errors import (
    BookingError, BookingPermissionError, NotFoundError, SlotTakenError,
    TransientNetworkError, ValidationError,
)

logger = logging.getLogger(__name__)

ENTITY_TYPE = "appointment"

# Sentinel for "field not provided" on partial edits (None clears a field)
_UNSET = object()

SPANISH_WEEKDAYS = ["lunes", "martes", "miercoles", "jueves", "viernes", "sabado", "domingo"]
SPANISH_MONTHS = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]


class PublicBookingResult(NamedTuple):
    """What the public booking page shows after a successful booking."""
    appointment_id: UUID
    service_name: str
    start_time: datetime
    end_time: datetime
    price: Decimal
    confirmation_token: str


# =============================================================================
# Transaction helpers
# =============================================================================

@contextmanager
def _write_transaction(db: Session, tenant_id: UUID):
    """Commit on success; roll back on any failure so no partial rows survive.

    Domain errors propagate unchanged; storage errors become
    TransientNetworkError (no automatic retry).
    """
    try:
        yield
        db.commit()
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Booking write failed: %s", e,
            extra=build_log_context(tenant_id=tenant_id),
        )
        raise TransientNetworkError() from e


def acquire_tenant_lock(db: Session, tenant_id: UUID) -> None:
    """Serialize booking writes per tenant until the transaction ends."""
    db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(booking_seq=Tenant.booking_seq + 1)
        .execution_options(synchronize_session=False)
    )


def lock_appointment(db: Session, tenant_id: UUID, appointment_id: UUID) -> Appointment:
    """
    Re-read an appointment under a row lock for the rest of the transaction.

    The identity-mapped instance is refreshed in place, so callers holding
    an earlier load see the committed status, not the one they loaded.
    """
    if db.get_bind().dialect.name == "sqlite":
        # SQLite ignores FOR UPDATE; a no-op write takes the database lock instead
        db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.tenant_id == tenant_id)
            .values(updated_at=Appointment.updated_at)
            .execution_options(synchronize_session=False)
        )
    appointment = db.scalar(
        select(Appointment)
        .where(Appointment.id == appointment_id, Appointment.tenant_id == tenant_id)
        .options(selectinload(Appointment.services))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if not appointment:
        raise NotFoundError()
    return appointment


def find_conflict(
    db: Session,
    tenant_id: UUID,
    start_time: datetime,
    end_time: datetime,
    exclude_appointment_id: UUID | None = None,
) -> UUID | None:
    """Id of a time-occupying appointment overlapping [start, end), if any."""
    stmt = select(Appointment.id).where(
        Appointment.tenant_id == tenant_id,
        Appointment.status.not_in([s.value for s in NON_BLOCKING_STATUSES]),
        Appointment.start_time < end_time,
        Appointment.end_time > start_time,
    )
    if exclude_appointment_id:
        stmt = stmt.where(Appointment.id != exclude_appointment_id)
    return db.scalar(stmt.limit(1))


def _attach_services(appointment: Appointment, rows: list[AppointmentService]) -> None:
    for position, row in enumerate(rows):
        row.position = position
    appointment.services.extend(rows)


def _totals(rows: list[AppointmentService]) -> tuple[int, Decimal]:
    duration = sum(r.duration_at_time for r in rows)
    price = sum((Decimal(r.price_at_time) for r in rows), Decimal("0"))
    return duration, price


# =============================================================================
# Create
# =============================================================================

def create_booking(
    db: Session,
    tenant: Tenant,
    client_id: UUID | None,
    service_ids: list[UUID],
    start_time: datetime | None,
    *,
    specialist_id: UUID | None = None,
    cabin_id: UUID | None = None,
    notes: str | None = None,
    receipt_url: str | None = None,
    source: AppointmentSource = AppointmentSource.STAFF,
    actor_user_id: UUID | None = None,
) -> Appointment:
    """
    Create an appointment atomically.

    1. Validate client, services, resources and start time
    2. Take the tenant booking lock
    3. Re-check overlap against every time-occupying appointment
    4. Insert appointment + service snapshots and commit as one unit

    Raises:
        ValidationError: invalid input
        SlotTakenError: the interval overlaps an existing booking
        TransientNetworkError: storage failure (nothing was written)
    """
    if not client_id:
        raise ValidationError("El cliente es obligatorio")
    if start_time is None:
        raise ValidationError("La hora de inicio es obligatoria")

    tenant_id = tenant.id
    tz = get_timezone(tenant.timezone)
    start_utc = normalize_start_time(start_time, tz)

    with _write_transaction(db, tenant_id):
        catalog_service.get_client(db, tenant_id, client_id)
        services = catalog_service.get_services(db, tenant_id, service_ids)
        catalog_service.validate_resources(db, tenant_id, specialist_id, cabin_id)

        rows = [
            AppointmentService(
                service_id=s.id,
                price_at_time=s.price,
                duration_at_time=s.duration,
            )
            for s in services
        ]
        duration, total_price = _totals(rows)
        end_utc = start_utc + timedelta(minutes=duration)

        acquire_tenant_lock(db, tenant_id)
        conflict_id = find_conflict(db, tenant_id, start_utc, end_utc)
        if conflict_id:
            logger.info(
                "Booking rejected: slot taken",
                extra=build_log_context(tenant_id=tenant_id, appointment_id=conflict_id),
            )
            raise SlotTakenError()

        appointment = Appointment(
            tenant_id=tenant_id,
            client_id=client_id,
            specialist_id=specialist_id,
            cabin_id=cabin_id,
            start_time=start_utc,
            end_time=end_utc,
            status=AppointmentStatus.PENDING.value,
            notes=notes,
            total_price=total_price,
            source=source.value,
            receipt_url=receipt_url,
            confirmation_token=generate_confirmation_token(),
        )
        _attach_services(appointment, rows)
        db.add(appointment)
        db.flush()

        audit_service.log_event(
            db,
            tenant_id=tenant_id,
            action=AuditAction.CREATE,
            entity_type=ENTITY_TYPE,
            entity_id=appointment.id,
            details={
                "source": source.value,
                "start_time": start_utc.isoformat(),
                "service_ids": [str(s.id) for s in services],
            },
            user_id=actor_user_id,
        )

    logger.info(
        "Appointment booked",
        extra=build_log_context(
            tenant_id=tenant_id, user_id=actor_user_id, appointment_id=appointment.id
        ),
    )
    return appointment


def create_public_booking(
    db: Session,
    slug: str,
    client_name: str,
    client_phone: str,
    client_email: str | None,
    service_id: UUID,
    start_time: datetime,
    receipt_url: str | None = None,
    now: datetime | None = None,
) -> PublicBookingResult:
    """
    Book from the public page: one service, client matched by phone.

    The start must be a slot the page could have offered (business hours,
    grid, same-day lead, booking window); whether it is still free is
    decided under the booking lock.
    """
    tenant = catalog_service.resolve_tenant_by_slug(db, slug)
    tz = get_timezone(tenant.timezone)
    now = now or datetime.now(timezone.utc)

    service = catalog_service.get_service(db, tenant.id, service_id)
    if not service or not service.is_active:
        raise ValidationError("Servicio no disponible")

    start_utc = normalize_start_time(start_time, tz)
    if not is_within_booking_window(start_utc.astimezone(tz).date(), local_today(tz, now)):
        raise ValidationError("Fecha fuera del periodo de reservas")
    if not is_offered_start(tenant, start_utc, service.duration, now=now):
        raise ValidationError("Horario fuera del horario de atencion")

    # Client creation shares the booking transaction; a rejected booking
    # leaves no orphan client behind.
    try:
        client = catalog_service.find_or_create_client(
            db, tenant.id, client_name, client_phone, client_email
        )
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientNetworkError() from e

    appointment = create_booking(
        db,
        tenant,
        client.id,
        [service.id],
        start_utc,
        notes=None,
        receipt_url=receipt_url,
        source=AppointmentSource.PUBLIC,
    )
    return PublicBookingResult(
        appointment_id=appointment.id,
        service_name=service.name,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        price=appointment.total_price,
        confirmation_token=appointment.confirmation_token,
    )


# =============================================================================
# Read
# =============================================================================

def _with_details(stmt):
    return stmt.options(
        joinedload(Appointment.client),
        joinedload(Appointment.specialist),
        joinedload(Appointment.cabin),
        selectinload(Appointment.services).joinedload(AppointmentService.service),
    )


def get_appointment(db: Session, tenant_id: UUID, appointment_id: UUID) -> Appointment:
    """Appointment scoped to tenant, with client and services loaded."""
    appointment = db.scalar(
        _with_details(select(Appointment)).where(
            Appointment.id == appointment_id,
            Appointment.tenant_id == tenant_id,
        )
    )
    if not appointment:
        raise NotFoundError()
    return appointment


def list_appointments(
    db: Session,
    tenant_id: UUID,
    date_start: datetime,
    date_end: datetime,
    status: AppointmentStatus | None = None,
) -> list[Appointment]:
    """Staff agenda: appointments starting in [date_start, date_end), by start."""
    stmt = _with_details(select(Appointment)).where(
        Appointment.tenant_id == tenant_id,
        Appointment.start_time >= date_start,
        Appointment.start_time < date_end,
    )
    if status:
        stmt = stmt.where(Appointment.status == status.value)
    return list(db.scalars(stmt.order_by(Appointment.start_time)).unique())


# =============================================================================
# Update / Delete
# =============================================================================

def update_appointment(
    db: Session,
    tenant: Tenant,
    appointment: Appointment,
    *,
    client_id=_UNSET,
    service_ids=_UNSET,
    start_time=_UNSET,
    specialist_id=_UNSET,
    cabin_id=_UNSET,
    notes=_UNSET,
    actor_user_id: UUID | None = None,
) -> Appointment:
    """
    Staff edit of a non-terminal appointment.

    Omitted fields are left as they are. When services change, the set is
    replaced as a unit: services that stay selected keep their price and
    duration snapshots, new ones snapshot the current catalog. end_time and
    total_price are recomputed, and a timing change is re-checked for
    overlap (excluding this appointment) under the booking lock.
    """
    tenant_id = tenant.id
    appointment_id = appointment.id
    tz = get_timezone(tenant.timezone)
    changed: list[str] = []

    with _write_transaction(db, tenant_id):
        appointment = lock_appointment(db, tenant_id, appointment_id)
        if AppointmentStatus(appointment.status) in TERMINAL_STATUSES:
            raise ValidationError("No se puede editar una cita finalizada")

        new_start = appointment.start_time
        if start_time is not _UNSET:
            if start_time is None:
                raise ValidationError("La hora de inicio es obligatoria")
            new_start = normalize_start_time(start_time, tz)

        if client_id is not _UNSET:
            if not client_id:
                raise ValidationError("El cliente es obligatorio")
            catalog_service.get_client(db, tenant_id, client_id)

        new_specialist = appointment.specialist_id if specialist_id is _UNSET else specialist_id
        new_cabin = appointment.cabin_id if cabin_id is _UNSET else cabin_id
        catalog_service.validate_resources(db, tenant_id, new_specialist, new_cabin)

        current_rows = {row.service_id: row for row in appointment.services}
        replacement: list[AppointmentService] | None = None
        if service_ids is not _UNSET:
            wanted = list(dict.fromkeys(service_ids or []))
            if not wanted:
                raise ValidationError("Selecciona al menos un servicio")
            added_ids = [sid for sid in wanted if sid not in current_rows]
            added = (
                {s.id: s for s in catalog_service.get_services(db, tenant_id, added_ids)}
                if added_ids else {}
            )
            replacement = []
            for sid in wanted:
                kept = current_rows.get(sid)
                if kept is not None:
                    replacement.append(AppointmentService(
                        service_id=sid,
                        price_at_time=kept.price_at_time,
                        duration_at_time=kept.duration_at_time,
                    ))
                else:
                    service = added[sid]
                    replacement.append(AppointmentService(
                        service_id=sid,
                        price_at_time=service.price,
                        duration_at_time=service.duration,
                    ))

        rows_for_totals = replacement if replacement is not None else list(appointment.services)
        duration, total_price = _totals(rows_for_totals)
        new_end = new_start + timedelta(minutes=duration)

        acquire_tenant_lock(db, tenant_id)
        if new_start != appointment.start_time or new_end != appointment.end_time:
            conflict_id = find_conflict(db, tenant_id, new_start, new_end, appointment.id)
            if conflict_id:
                raise SlotTakenError()
            changed.append("start_time")

        if replacement is not None:
            # Delete the old set before inserting so the (appointment, service)
            # unique constraint never sees both
            appointment.services.clear()
            db.flush()
            _attach_services(appointment, replacement)
            db.flush()
            changed.append("services")

        if client_id is not _UNSET and client_id != appointment.client_id:
            appointment.client_id = client_id
            changed.append("client_id")
        if new_specialist != appointment.specialist_id:
            appointment.specialist_id = new_specialist
            changed.append("specialist_id")
        if new_cabin != appointment.cabin_id:
            appointment.cabin_id = new_cabin
            changed.append("cabin_id")
        if notes is not _UNSET and notes != appointment.notes:
            appointment.notes = notes
            changed.append("notes")

        appointment.start_time = new_start
        appointment.end_time = new_end
        appointment.total_price = total_price
        appointment.updated_at = utc_now()
        db.flush()

        audit_service.log_event(
            db,
            tenant_id=tenant_id,
            action=AuditAction.UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=appointment.id,
            details={"changed": changed},
            user_id=actor_user_id,
        )

    db.refresh(appointment)
    return appointment


def delete_appointment(db: Session, appointment: Appointment, session) -> None:
    """Hard delete (owner only). Service rows go with it."""
    if session.role not in ROLES_CAN_HARD_DELETE:
        raise BookingPermissionError("Solo el propietario puede eliminar citas")

    appointment_id = appointment.id
    with _write_transaction(db, appointment.tenant_id):
        details = {
            "status": appointment.status,
            "start_time": appointment.start_time.isoformat(),
            "client_id": str(appointment.client_id),
        }
        db.delete(appointment)
        db.flush()
        audit_service.log_event(
            db,
            tenant_id=session.tenant_id,
            action=AuditAction.DELETE,
            entity_type=ENTITY_TYPE,
            entity_id=appointment_id,
            details=details,
            user_id=session.user_id,
        )

    logger.info(
        "Appointment deleted",
        extra=build_log_context(
            tenant_id=session.tenant_id, user_id=session.user_id, appointment_id=appointment_id
        ),
    )


# =============================================================================
# Reminders
# =============================================================================

def mark_reminder_sent(
    db: Session,
    appointment: Appointment,
    now: datetime | None = None,
) -> Appointment:
    """Stamp that staff sent the WhatsApp reminder."""
    with _write_transaction(db, appointment.tenant_id):
        appointment.reminder_sent_at = now or utc_now()
        appointment.updated_at = utc_now()
    db.refresh(appointment)
    return appointment


def format_spanish_date(day: date) -> str:
    """e.g. 'lunes 5 de enero'."""
    return f"{SPANISH_WEEKDAYS[day.weekday()]} {day.day} de {SPANISH_MONTHS[day.month - 1]}"


def build_confirmation_url(token: str, base_url: str | None = None) -> str:
    return f"{(base_url or settings.FRONTEND_URL).rstrip('/')}/confirm/{token}"


def build_whatsapp_reminder_url(
    appointment: Appointment,
    tenant: Tenant,
    base_url: str | None = None,
) -> str:
    """wa.me link with a pre-filled reminder and the confirmation link."""
    if appointment.status not in (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value):
        raise ValidationError("Solo se pueden recordar citas pendientes o confirmadas")
    client = appointment.client
    digits = "".join(ch for ch in (client.phone or "") if ch.isdigit())
    if not digits:
        raise ValidationError("El cliente no tiene telefono")

    local_start = appointment.start_time.astimezone(get_timezone(tenant.timezone))
    message = (
        f"Hola {client.name}, te recordamos tu cita para el "
        f"{format_spanish_date(local_start.date())} a las {local_start:%H:%M} hrs. "
        f"¡Te esperamos!\n"
        f"Confirma o cancela aqui: {build_confirmation_url(appointment.confirmation_token, base_url)}"
    )
    return f"https://wa.me/{digits}?text={quote(message, safe='')}"
