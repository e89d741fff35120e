"""
Tests for the booking service.

Coverage:
- Atomic create (derived end time and price, snapshots, validation)
- Double-booking prevention (stale availability, concurrent writers)
- Staff edits (service set replacement, price snapshot retention, rollback)
- Public booking (client matching, window and hours checks)
- Delete permissions, reminders, audit trail
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import unquote

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from salon_agenda.db.enums import AppointmentSource, AppointmentStatus, Role
from salon_agenda.db.models import (
    Appointment, AppointmentService, AuditLog, Client, Service, Tenant,
)
from salon_agenda.db.session import SessionLocal
from salon_agenda.schemas.auth import StaffSession
from salon_agenda.services import (
    audit_service, availability_service, booking_service, confirmation_service,
)
from salon_agenda.services.errors import (
    BookingPermissionError, NotFoundError, SlotTakenError, TransientNetworkError,
    ValidationError,
)

from helpers import local_dt


def _count(db, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


def _session_for(user) -> StaffSession:
    return StaffSession(
        user_id=user.id,
        tenant_id=user.tenant_id,
        role=Role(user.role),
        email=user.email,
        display_name=user.display_name,
    )


# =============================================================================
# Create
# =============================================================================

class TestCreateBooking:
    def test_derives_end_time_and_price_from_services(
        self, db, test_tenant, facial, manicure, test_client_record, booking_day
    ):
        start = local_dt(booking_day, "10:00")
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id, manicure.id], start
        )

        assert appt.status == AppointmentStatus.PENDING.value
        assert appt.start_time == start.astimezone(timezone.utc)
        assert appt.end_time == appt.start_time + timedelta(minutes=90)
        assert appt.total_price == Decimal("370.00")
        assert appt.source == AppointmentSource.STAFF.value
        assert [row.service_id for row in appt.services] == [facial.id, manicure.id]
        assert [row.price_at_time for row in appt.services] == [Decimal("250.00"), Decimal("120.00")]

    def test_generates_unguessable_token(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        first = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "09:00")
        )
        second = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "11:00")
        )
        assert len(first.confirmation_token) >= 43
        assert first.confirmation_token != second.confirmation_token

    def test_naive_start_is_tenant_local(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        naive = local_dt(booking_day, "10:00").replace(tzinfo=None)
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], naive
        )
        assert appt.start_time == local_dt(booking_day, "10:00").astimezone(timezone.utc)

    @pytest.mark.parametrize("offset", [timedelta(seconds=45), timedelta(microseconds=1)])
    def test_start_must_be_a_whole_minute(
        self, db, test_tenant, facial, test_client_record, booking_day, offset
    ):
        with pytest.raises(ValidationError, match="minuto exacto"):
            booking_service.create_booking(
                db, test_tenant, test_client_record.id, [facial.id],
                local_dt(booking_day, "10:00") + offset,
            )
        with pytest.raises(ValidationError, match="minuto exacto"):
            booking_service.create_public_booking(
                db, test_tenant.slug, "Carla", "11111111", None, facial.id,
                local_dt(booking_day, "10:00") + offset,
            )
        assert _count(db, Appointment) == 0
        assert _count(db, Client) == 1

    def test_duplicate_service_ids_collapse(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id, facial.id], local_dt(booking_day, "10:00")
        )
        assert len(appt.services) == 1
        assert appt.total_price == Decimal("250.00")

    def test_stores_specialist_and_cabin(
        self, db, test_tenant, facial, test_client_record, specialist, cabin, booking_day
    ):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00"),
            specialist_id=specialist.id, cabin_id=cabin.id, notes="Piel sensible",
        )
        assert appt.specialist_id == specialist.id
        assert appt.cabin_id == cabin.id
        assert appt.notes == "Piel sensible"

    def test_requires_services(self, db, test_tenant, test_client_record, booking_day):
        with pytest.raises(ValidationError, match="servicio"):
            booking_service.create_booking(
                db, test_tenant, test_client_record.id, [], local_dt(booking_day, "10:00")
            )

    def test_requires_client(self, db, test_tenant, facial, booking_day):
        with pytest.raises(ValidationError, match="cliente"):
            booking_service.create_booking(
                db, test_tenant, None, [facial.id], local_dt(booking_day, "10:00")
            )

    def test_requires_start_time(self, db, test_tenant, facial, test_client_record):
        with pytest.raises(ValidationError, match="hora"):
            booking_service.create_booking(db, test_tenant, test_client_record.id, [facial.id], None)

    def test_rejects_inactive_service(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        facial.is_active = False
        db.commit()
        with pytest.raises(ValidationError, match="Servicio no disponible"):
            booking_service.create_booking(
                db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
            )

    def test_rejects_other_tenant_service_and_client(
        self, db, test_tenant, other_tenant, facial, test_client_record, booking_day
    ):
        foreign_service = Service(tenant_id=other_tenant.id, name="X", duration=30, price=Decimal("1"))
        foreign_client = Client(tenant_id=other_tenant.id, name="Y", phone="1")
        db.add_all([foreign_service, foreign_client])
        db.commit()

        with pytest.raises(ValidationError):
            booking_service.create_booking(
                db, test_tenant, test_client_record.id, [foreign_service.id], local_dt(booking_day, "10:00")
            )
        with pytest.raises(ValidationError):
            booking_service.create_booking(
                db, test_tenant, foreign_client.id, [facial.id], local_dt(booking_day, "10:00")
            )
        assert _count(db, Appointment) == 0

    def test_writes_audit_entry(
        self, db, test_tenant, facial, test_client_record, owner_user, booking_day
    ):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00"),
            actor_user_id=owner_user.id,
        )
        entry = db.scalar(select(AuditLog).where(AuditLog.entity_id == appt.id))
        assert entry.action == "create"
        assert entry.entity_type == "appointment"
        assert entry.user_id == owner_user.id

    def test_audit_failure_does_not_fail_booking(
        self, db, test_tenant, facial, test_client_record, booking_day, monkeypatch
    ):
        def broken_entry(**kwargs):
            raise SQLAlchemyError("audit table unavailable")

        monkeypatch.setattr(audit_service, "AuditLog", broken_entry)
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        assert appt.id is not None
        assert _count(db, Appointment) == 1
        assert _count(db, AuditLog) == 0


# =============================================================================
# Double-booking prevention
# =============================================================================

class TestSlotConflicts:
    def test_overlapping_booking_rejected(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        with pytest.raises(SlotTakenError, match="Horario no disponible"):
            booking_service.create_booking(
                db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:30")
            )
        assert _count(db, Appointment) == 1
        assert _count(db, AppointmentService) == 1

    def test_touching_booking_allowed(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "11:00")
        )
        assert _count(db, Appointment) == 2

    def test_cancelled_booking_frees_slot(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        first = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        first.status = AppointmentStatus.CANCELLED.value
        db.commit()
        booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        assert _count(db, Appointment) == 2

    def test_stale_availability_is_rechecked_at_commit(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        """A slot shown as free can be taken before the client submits."""
        shown = availability_service.get_availability(db, test_tenant, booking_day, 60)
        slot = shown.slots[0]

        booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], slot.start
        )
        with pytest.raises(SlotTakenError):
            booking_service.create_booking(
                db, test_tenant, test_client_record.id, [facial.id], slot.start
            )

    def test_concurrent_bookings_for_same_slot(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        """Two writers racing for one slot: exactly one wins."""
        tenant_id, client_id, service_id = test_tenant.id, test_client_record.id, facial.id
        start = local_dt(booking_day, "14:00")
        barrier = threading.Barrier(2)
        outcomes: list[str] = []
        lock = threading.Lock()

        def book():
            session = SessionLocal()
            try:
                tenant = session.get(Tenant, tenant_id)
                barrier.wait()
                booking_service.create_booking(session, tenant, client_id, [service_id], start)
                result = "booked"
            except SlotTakenError:
                result = "taken"
            except Exception as e:  # surfaced through the assertion below
                result = f"error: {e!r}"
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=book) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(outcomes) == ["booked", "taken"]
        db.expire_all()
        assert _count(db, Appointment) == 1


# =============================================================================
# Staff edits
# =============================================================================

class TestUpdateAppointment:
    @pytest.fixture
    def appointment(self, db, test_tenant, facial, test_client_record, booking_day):
        return booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )

    def test_catalog_price_change_does_not_alter_total(self, db, appointment, facial):
        facial.price = Decimal("999.00")
        db.commit()
        db.refresh(appointment)
        assert appointment.total_price == Decimal("250.00")

    def test_retained_service_keeps_price_new_service_takes_catalog(
        self, db, test_tenant, appointment, facial, manicure
    ):
        facial.price = Decimal("300.00")
        manicure.price = Decimal("130.00")
        db.commit()

        updated = booking_service.update_appointment(
            db, test_tenant, appointment, service_ids=[facial.id, manicure.id]
        )

        prices = {row.service_id: row.price_at_time for row in updated.services}
        assert prices == {facial.id: Decimal("250.00"), manicure.id: Decimal("130.00")}
        assert updated.total_price == Decimal("380.00")
        assert updated.end_time - updated.start_time == timedelta(minutes=90)

    def test_removing_a_service_shrinks_interval(
        self, db, test_tenant, facial, manicure, test_client_record, booking_day
    ):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id, manicure.id], local_dt(booking_day, "10:00")
        )
        updated = booking_service.update_appointment(db, test_tenant, appt, service_ids=[manicure.id])
        assert [row.service_id for row in updated.services] == [manicure.id]
        assert updated.end_time - updated.start_time == timedelta(minutes=30)
        assert _count(db, AppointmentService) == 1

    def test_move_into_taken_slot_rejected(
        self, db, test_tenant, appointment, facial, test_client_record, booking_day
    ):
        booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "12:00")
        )
        with pytest.raises(SlotTakenError):
            booking_service.update_appointment(
                db, test_tenant, appointment, start_time=local_dt(booking_day, "11:30")
            )
        db.refresh(appointment)
        assert appointment.start_time == local_dt(booking_day, "10:00").astimezone(timezone.utc)

    def test_move_overlapping_itself_allowed(self, db, test_tenant, appointment, booking_day):
        updated = booking_service.update_appointment(
            db, test_tenant, appointment, start_time=local_dt(booking_day, "10:30")
        )
        assert updated.start_time == local_dt(booking_day, "10:30").astimezone(timezone.utc)
        assert updated.end_time == local_dt(booking_day, "11:30").astimezone(timezone.utc)

    def test_omitted_fields_unchanged_none_clears(
        self, db, test_tenant, facial, test_client_record, specialist, booking_day
    ):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00"),
            specialist_id=specialist.id, notes="nota",
        )
        updated = booking_service.update_appointment(db, test_tenant, appt, notes=None)
        assert updated.notes is None
        assert updated.specialist_id == specialist.id

    def test_terminal_appointment_cannot_be_edited(self, db, test_tenant, appointment):
        appointment.status = AppointmentStatus.COMPLETED.value
        db.commit()
        with pytest.raises(ValidationError, match="finalizada"):
            booking_service.update_appointment(db, test_tenant, appointment, notes="x")

    def test_edit_after_client_cancelled_is_rejected(self, db, test_tenant, appointment):
        """The edit form was opened while pending; the client cancels before saving."""
        token, appointment_id = appointment.confirmation_token, appointment.id
        assert appointment.status == "pending"

        with SessionLocal() as client_db:
            confirmation_service.respond_by_token(client_db, token, "cancel")

        with pytest.raises(ValidationError, match="finalizada"):
            booking_service.update_appointment(db, test_tenant, appointment, notes="x")

        with SessionLocal() as fresh:
            stored = fresh.get(Appointment, appointment_id)
            assert stored.status == "cancelled"
            assert stored.notes is None

    def test_failed_replacement_keeps_old_service_set(
        self, db, test_tenant, appointment, facial, manicure, monkeypatch
    ):
        appointment_id = appointment.id

        def failing_attach(appt, rows):
            raise OperationalError("INSERT INTO appointment_services", {}, Exception("disk I/O error"))

        monkeypatch.setattr(booking_service, "_attach_services", failing_attach)
        with pytest.raises(TransientNetworkError):
            booking_service.update_appointment(
                db, test_tenant, appointment, service_ids=[manicure.id]
            )

        with SessionLocal() as fresh:
            rows = fresh.scalars(
                select(AppointmentService).where(AppointmentService.appointment_id == appointment_id)
            ).all()
            assert [row.service_id for row in rows] == [facial.id]
            assert fresh.get(Appointment, appointment_id).total_price == Decimal("250.00")


# =============================================================================
# Public booking
# =============================================================================

class TestPublicBooking:
    def test_creates_client_and_pending_public_appointment(
        self, db, test_tenant, facial, booking_day
    ):
        result = booking_service.create_public_booking(
            db, test_tenant.slug, "Carla Ruiz", "+502 5555-9999", "carla@example.com",
            facial.id, local_dt(booking_day, "10:00"), receipt_url="https://files.example.com/r.jpg",
        )
        assert result.service_name == "Limpieza facial"
        assert result.price == Decimal("250.00")
        assert result.end_time - result.start_time == timedelta(minutes=60)

        appt = db.get(Appointment, result.appointment_id)
        assert appt.source == AppointmentSource.PUBLIC.value
        assert appt.status == AppointmentStatus.PENDING.value
        assert appt.receipt_url == "https://files.example.com/r.jpg"
        assert appt.client.phone == "+50255559999"

    def test_matches_existing_client_by_phone(self, db, test_tenant, facial, booking_day):
        booking_service.create_public_booking(
            db, test_tenant.slug, "Carla", "5555-9999", None, facial.id, local_dt(booking_day, "10:00"),
        )
        booking_service.create_public_booking(
            db, test_tenant.slug, "Carla R.", "5555 9999", None, facial.id, local_dt(booking_day, "12:00"),
        )
        assert _count(db, Client) == 1

    def test_slot_taken_leaves_no_orphan_client(self, db, test_tenant, facial, booking_day):
        booking_service.create_public_booking(
            db, test_tenant.slug, "Carla", "11111111", None, facial.id, local_dt(booking_day, "10:00"),
        )
        with pytest.raises(SlotTakenError):
            booking_service.create_public_booking(
                db, test_tenant.slug, "Pedro", "22222222", None, facial.id, local_dt(booking_day, "10:00"),
            )
        assert _count(db, Client) == 1

    def test_outside_business_hours_rejected(self, db, test_tenant, facial, booking_day):
        with pytest.raises(ValidationError, match="horario"):
            booking_service.create_public_booking(
                db, test_tenant.slug, "Carla", "11111111", None, facial.id, local_dt(booking_day, "16:30"),
            )

    def test_off_grid_start_rejected(self, db, test_tenant, facial, booking_day):
        with pytest.raises(ValidationError):
            booking_service.create_public_booking(
                db, test_tenant.slug, "Carla", "11111111", None, facial.id, local_dt(booking_day, "10:15"),
            )

    def test_beyond_booking_window_rejected(self, db, test_tenant, facial, booking_day):
        with pytest.raises(ValidationError, match="periodo"):
            booking_service.create_public_booking(
                db, test_tenant.slug, "Carla", "11111111", None, facial.id,
                local_dt(booking_day + timedelta(days=40), "10:00"),
            )

    def test_unknown_slug(self, db, facial, booking_day):
        with pytest.raises(NotFoundError):
            booking_service.create_public_booking(
                db, "no-such-salon", "Carla", "11111111", None, facial.id, local_dt(booking_day, "10:00"),
            )


# =============================================================================
# Agenda, delete, reminders
# =============================================================================

class TestAgendaAndReminders:
    def test_list_appointments_ordered_and_filtered(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        late = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "15:00")
        )
        early = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "09:00")
        )
        booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id],
            local_dt(booking_day + timedelta(days=1), "09:00"),
        )
        early.status = AppointmentStatus.CONFIRMED.value
        db.commit()

        tz = availability_service.get_timezone(test_tenant.timezone)
        start, end = availability_service.local_day_bounds(booking_day, tz)
        items = booking_service.list_appointments(db, test_tenant.id, start, end)
        assert [a.id for a in items] == [early.id, late.id]

        confirmed = booking_service.list_appointments(
            db, test_tenant.id, start, end, AppointmentStatus.CONFIRMED
        )
        assert [a.id for a in confirmed] == [early.id]

    def test_owner_can_delete(self, db, test_tenant, facial, test_client_record, owner_user, booking_day):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        appointment_id = appt.id
        booking_service.delete_appointment(db, appt, _session_for(owner_user))

        assert db.get(Appointment, appointment_id) is None
        assert _count(db, AppointmentService) == 0
        entry = db.scalar(select(AuditLog).where(AuditLog.action == "delete"))
        assert entry.entity_id == appointment_id

    def test_staff_cannot_delete(self, db, test_tenant, facial, test_client_record, staff_user, booking_day):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        with pytest.raises(BookingPermissionError):
            booking_service.delete_appointment(db, appt, _session_for(staff_user))
        assert _count(db, Appointment) == 1

    def test_mark_reminder_sent(self, db, test_tenant, facial, test_client_record, booking_day):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        sent_at = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        booking_service.mark_reminder_sent(db, appt, now=sent_at)
        assert appt.reminder_sent_at == sent_at

    def test_whatsapp_url(self, db, test_tenant, facial, test_client_record, booking_day):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        url = booking_service.build_whatsapp_reminder_url(
            appt, test_tenant, base_url="https://agenda.example.com"
        )
        assert url.startswith("https://wa.me/50255551234?text=")
        text = unquote(url.split("?text=", 1)[1])
        assert text.startswith("Hola Ana Lopez, te recordamos tu cita para el ")
        assert "a las 10:00 hrs." in text
        assert f"https://agenda.example.com/confirm/{appt.confirmation_token}" in text

    def test_whatsapp_url_requires_phone_and_open_status(
        self, db, test_tenant, facial, test_client_record, booking_day
    ):
        appt = booking_service.create_booking(
            db, test_tenant, test_client_record.id, [facial.id], local_dt(booking_day, "10:00")
        )
        appt.status = AppointmentStatus.CANCELLED.value
        db.commit()
        with pytest.raises(ValidationError):
            booking_service.build_whatsapp_reminder_url(appt, test_tenant)

        appt.status = AppointmentStatus.PENDING.value
        test_client_record.phone = None
        db.commit()
        with pytest.raises(ValidationError, match="telefono"):
            booking_service.build_whatsapp_reminder_url(appt, test_tenant)

    def test_spanish_date_format(self):
        from datetime import date
        assert booking_service.format_spanish_date(date(2030, 3, 4)) == "lunes 4 de marzo"
