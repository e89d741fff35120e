"""SQLAlchemy ORM models for tenants, catalog, clients and appointments."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, ForeignKey, Index, Integer, Numeric,
    String, Text, UniqueConstraint, Uuid, text, true
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from salon_agenda.db.base import Base
from salon_agenda.db.enums import (
    DEFAULT_APPOINTMENT_STATUS, AppointmentSource, Role
)


JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Tenant & Staff Models
# =============================================================================

class Tenant(Base):
    """
    A salon/spa business in the multi-tenant system.

    All domain entities belong to a tenant
    and must be scoped by tenant_id in all queries.
    """
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Public booking slug (/book/{slug})
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    # IANA zone; business hours and "today" are evaluated here
    timezone: Mapped[str] = mapped_column(
        String(50),
        server_default=text("'America/Guatemala'"),
        default="America/Guatemala",
        nullable=False,
    )
    # {"monday": {"enabled": true, "open": "09:00", "close": "17:00"}, ...}
    business_hours: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=true(), default=True, nullable=False
    )
    # Bumped by every booking write; the UPDATE doubles as the tenant booking lock
    booking_seq: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )


class User(Base):
    """
    Staff user.

    Authentication is external; the session cookie carries user_id,
    tenant_id, role and token_version.
    """
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_tenant", "tenant_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=Role.STAFF.value, nullable=False)
    token_version: Mapped[int] = mapped_column(
        Integer, server_default=text("1"), default=1, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=true(), default=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    tenant: Mapped["Tenant"] = relationship()


# =============================================================================
# Catalog & Resources
# =============================================================================

class Service(Base):
    """Catalog service (e.g., "Limpieza facial"). Read-only to the scheduler."""
    __tablename__ = "services"
    __table_args__ = (
        Index("idx_services_tenant", "tenant_id", "is_active"),
        CheckConstraint("duration > 0", name="ck_service_duration_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=true(), default=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class TeamMember(Base):
    """Specialist who can be assigned to appointments."""
    __tablename__ = "team_members"
    __table_args__ = (
        Index("idx_team_members_tenant", "tenant_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=true(), default=True, nullable=False
    )


class Cabin(Base):
    """Treatment room."""
    __tablename__ = "cabins"
    __table_args__ = (
        Index("idx_cabins_tenant", "tenant_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=true(), default=True, nullable=False
    )


class Client(Base):
    """Salon client. Public bookings are matched by (tenant_id, phone)."""
    __tablename__ = "clients"
    __table_args__ = (
        Index("idx_clients_tenant_phone", "tenant_id", "phone"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


# =============================================================================
# Appointments
# =============================================================================

class Appointment(Base):
    """
    A scheduled occupation of a client's time by a tenant's business.

    end_time and total_price are derived from the AppointmentService rows
    and recomputed on every create/edit.
    """
    __tablename__ = "appointments"
    __table_args__ = (
        UniqueConstraint("confirmation_token", name="uq_appointment_confirmation_token"),
        Index("idx_appointments_tenant_start", "tenant_id", "start_time"),
        Index("idx_appointments_tenant_status", "tenant_id", "status"),
        CheckConstraint("end_time > start_time", name="ck_appointment_time_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False
    )
    # Resource references (not part of the conflict check)
    specialist_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("team_members.id", ondelete="SET NULL"), nullable=True
    )
    cabin_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("cabins.id", ondelete="SET NULL"), nullable=True
    )

    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_APPOINTMENT_STATUS.value, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False
    )
    source: Mapped[str] = mapped_column(
        String(20), default=AppointmentSource.STAFF.value, nullable=False
    )
    receipt_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Public confirmation link
    confirmation_token: Mapped[str] = mapped_column(String(100), nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship()
    client: Mapped["Client"] = relationship()
    specialist: Mapped["TeamMember | None"] = relationship()
    cabin: Mapped["Cabin | None"] = relationship()
    services: Mapped[list["AppointmentService"]] = relationship(
        back_populates="appointment",
        cascade="all, delete-orphan",
        order_by="AppointmentService.position",
    )


class AppointmentService(Base):
    """Service selection snapshotted onto an appointment."""
    __tablename__ = "appointment_services"
    __table_args__ = (
        UniqueConstraint("appointment_id", "service_id", name="uq_appointment_service"),
        Index("idx_appointment_services_appointment", "appointment_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id", ondelete="RESTRICT"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Snapshots taken at insertion; never recomputed from the catalog
    price_at_time: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_at_time: Mapped[int] = mapped_column(Integer, nullable=False)

    appointment: Mapped["Appointment"] = relationship(back_populates="services")
    service: Mapped["Service"] = relationship()


# =============================================================================
# Audit
# =============================================================================

class AuditLog(Base):
    """Append-only audit trail of appointment creates/updates/deletes."""
    __tablename__ = "audit_log"
    __table_args__ = (
        Index("idx_audit_log_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    # Null for public (token / booking page) actions
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
