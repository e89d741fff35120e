"""Appointments router - staff agenda endpoints.

Authenticated (session cookie) endpoints for staff to:
- List the agenda and check availability
- Book, edit and delete appointments
- Move appointments through their lifecycle
- Send WhatsApp reminders
"""

from datetime import date, datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from salon_agenda.core.deps import (
    can_hard_delete,
    get_current_session,
    get_db,
    http_error,
    require_csrf_header,
)
from salon_agenda.db.enums import AppointmentStatus
from salon_agenda.db.models import Appointment
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
from salon_agenda.schemas.booking import AvailabilityRead, SlotRead
from salon_agenda.services import (
    appointment_lifecycle,
    availability_service,
    booking_service,
    catalog_service,
)
from salon_agenda.services.errors import BookingError

router = APIRouter()


# =============================================================================
# Helper Functions
# =============================================================================

def _appointment_to_read(appt: Appointment) -> AppointmentRead:
    """Convert Appointment model to read schema."""
    return AppointmentRead(
        id=appt.id,
        client_id=appt.client_id,
        client_name=appt.client.name,
        client_phone=appt.client.phone,
        specialist_id=appt.specialist_id,
        specialist_name=appt.specialist.name if appt.specialist else None,
        cabin_id=appt.cabin_id,
        cabin_name=appt.cabin.name if appt.cabin else None,
        start_time=appt.start_time,
        end_time=appt.end_time,
        status=appt.status,
        notes=appt.notes,
        total_price=appt.total_price,
        source=appt.source,
        receipt_url=appt.receipt_url,
        confirmed_at=appt.confirmed_at,
        reminder_sent_at=appt.reminder_sent_at,
        services=[
            AppointmentServiceRead(
                service_id=row.service_id,
                name=row.service.name,
                price_at_time=row.price_at_time,
                duration_at_time=row.duration_at_time,
            )
            for row in appt.services
        ],
        created_at=appt.created_at,
        updated_at=appt.updated_at,
    )


def _load(db: Session, session: StaffSession, appointment_id: UUID) -> Appointment:
    try:
        return booking_service.get_appointment(db, session.tenant_id, appointment_id)
    except BookingError as e:
        raise http_error(e)


def _reload(db: Session, session: StaffSession, appointment_id: UUID) -> AppointmentRead:
    return _appointment_to_read(_load(db, session, appointment_id))


# =============================================================================
# Agenda
# =============================================================================

@router.get("", response_model=AppointmentListResponse)
def list_appointments(
    date_start: date | None = Query(None, description="First day (tenant-local), defaults to today"),
    date_end: date | None = Query(None, description="Last day inclusive, defaults to date_start"),
    status: AppointmentStatus | None = None,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Agenda for a tenant-local date range, ordered by start time."""
    tenant = catalog_service.get_tenant(db, session.tenant_id)
    tz = availability_service.get_timezone(tenant.timezone)
    if not date_start:
        date_start = availability_service.local_today(tz)
    if not date_end:
        date_end = date_start
    if date_end < date_start:
        raise HTTPException(status_code=422, detail="date_end must be on or after date_start")
    if (date_end - date_start).days > 62:
        raise HTTPException(status_code=422, detail="Date range too large (max 62 days)")

    range_start, _ = availability_service.local_day_bounds(date_start, tz)
    _, range_end = availability_service.local_day_bounds(date_end, tz)
    items = booking_service.list_appointments(db, session.tenant_id, range_start, range_end, status)
    return AppointmentListResponse(
        items=[_appointment_to_read(a) for a in items],
        total=len(items),
    )


@router.get("/availability", response_model=AvailabilityRead)
def get_availability(
    target_date: date = Query(..., alias="date"),
    service_ids: list[UUID] = Query(...),
    exclude_appointment_id: UUID | None = None,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Free slots for the combined duration of the selected services."""
    tenant = catalog_service.get_tenant(db, session.tenant_id)
    try:
        services = catalog_service.get_services(db, tenant.id, service_ids)
    except BookingError as e:
        raise http_error(e)
    duration = sum(s.duration for s in services)
    result = availability_service.get_availability(
        db, tenant, target_date, duration, exclude_appointment_id=exclude_appointment_id
    )
    return AvailabilityRead(
        date=result.date,
        slots=[SlotRead(time=s.local_time, start_time=s.start, end_time=s.end) for s in result.slots],
        is_day_closed=result.is_day_closed,
    )


# =============================================================================
# CRUD
# =============================================================================

@router.post(
    "",
    response_model=AppointmentRead,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def create_appointment(
    data: AppointmentCreate,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Book an appointment (any time, not limited to business hours)."""
    tenant = catalog_service.get_tenant(db, session.tenant_id)
    try:
        appt = booking_service.create_booking(
            db,
            tenant,
            client_id=data.client_id,
            service_ids=data.service_ids,
            start_time=data.start_time,
            specialist_id=data.specialist_id,
            cabin_id=data.cabin_id,
            notes=data.notes,
            actor_user_id=session.user_id,
        )
    except BookingError as e:
        raise http_error(e)
    return _reload(db, session, appt.id)


@router.get("/{appointment_id}", response_model=AppointmentRead)
def get_appointment(
    appointment_id: UUID,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return _appointment_to_read(_load(db, session, appointment_id))


@router.patch(
    "/{appointment_id}",
    response_model=AppointmentRead,
    dependencies=[Depends(require_csrf_header)],
)
def update_appointment(
    appointment_id: UUID,
    data: AppointmentUpdate,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Edit an appointment; only fields present in the body change."""
    appt = _load(db, session, appointment_id)
    tenant = catalog_service.get_tenant(db, session.tenant_id)
    try:
        booking_service.update_appointment(
            db,
            tenant,
            appt,
            actor_user_id=session.user_id,
            **data.model_dump(exclude_unset=True),
        )
    except BookingError as e:
        raise http_error(e)
    return _reload(db, session, appointment_id)


@router.delete(
    "/{appointment_id}",
    status_code=204,
    dependencies=[Depends(require_csrf_header)],
)
def delete_appointment(
    appointment_id: UUID,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Permanently delete an appointment (owner only)."""
    if not can_hard_delete(session):
        raise HTTPException(status_code=403, detail="Solo el propietario puede eliminar citas")
    appt = _load(db, session, appointment_id)
    try:
        booking_service.delete_appointment(db, appt, session)
    except BookingError as e:
        raise http_error(e)
    return None


# =============================================================================
# Lifecycle & reminders
# =============================================================================

@router.post(
    "/{appointment_id}/status",
    response_model=AppointmentRead,
    dependencies=[Depends(require_csrf_header)],
)
def change_status(
    appointment_id: UUID,
    data: StatusChange,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    appt = _load(db, session, appointment_id)
    try:
        appointment_lifecycle.change_status(db, appt, data.status, session)
    except BookingError as e:
        raise http_error(e)
    return _reload(db, session, appointment_id)


@router.post(
    "/{appointment_id}/reminder-sent",
    response_model=AppointmentRead,
    dependencies=[Depends(require_csrf_header)],
)
def mark_reminder_sent(
    appointment_id: UUID,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    appt = _load(db, session, appointment_id)
    try:
        booking_service.mark_reminder_sent(db, appt, now=datetime.now(timezone.utc))
    except BookingError as e:
        raise http_error(e)
    return _reload(db, session, appointment_id)


@router.get("/{appointment_id}/whatsapp-link", response_model=WhatsAppLinkRead)
def get_whatsapp_link(
    appointment_id: UUID,
    session: StaffSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Pre-filled WhatsApp reminder with the client's confirmation link."""
    appt = _load(db, session, appointment_id)
    tenant = catalog_service.get_tenant(db, session.tenant_id)
    try:
        url = booking_service.build_whatsapp_reminder_url(appt, tenant)
    except BookingError as e:
        raise http_error(e)
    return WhatsAppLinkRead(url=url)
