"""Catalog and tenant lookups consumed by the scheduling engine."""

import re
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from salon_agenda.db.models import Cabin, Client, Service, TeamMember, Tenant
from salon_agenda.services.availability_service import validate_business_hours
from salon_agenda.services.errors import NotFoundError, ValidationError


# =============================================================================
# Tenants
# =============================================================================

def resolve_tenant_by_slug(db: Session, slug: str) -> Tenant:
    """Active tenant for a public booking slug."""
    tenant = db.scalar(
        select(Tenant).where(Tenant.slug == slug.lower(), Tenant.is_active.is_(True))
    )
    if not tenant:
        raise NotFoundError("Negocio no encontrado")
    return tenant


def get_tenant(db: Session, tenant_id: UUID) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise NotFoundError("Negocio no encontrado")
    return tenant


def create_tenant(
    db: Session,
    name: str,
    slug: str,
    timezone_name: str,
    business_hours: dict | None = None,
) -> Tenant:
    """Create a tenant. Caller commits."""
    if db.scalar(select(Tenant.id).where(Tenant.slug == slug.lower())):
        raise ValidationError(f"Slug '{slug}' ya existe")
    tenant = Tenant(
        name=name,
        slug=slug.lower(),
        timezone=timezone_name,
        business_hours=validate_business_hours(business_hours) if business_hours else None,
    )
    db.add(tenant)
    db.flush()
    return tenant


# =============================================================================
# Services
# =============================================================================

def get_service(db: Session, tenant_id: UUID, service_id: UUID) -> Service | None:
    """Service by id, scoped to tenant (inactive included)."""
    return db.scalar(
        select(Service).where(Service.id == service_id, Service.tenant_id == tenant_id)
    )


def get_services(db: Session, tenant_id: UUID, service_ids: list[UUID]) -> list[Service]:
    """
    Active services for the given ids, in the requested order.

    Raises ValidationError when any id is unknown, inactive or belongs to
    another tenant. Duplicate ids are collapsed.
    """
    unique_ids = list(dict.fromkeys(service_ids))
    if not unique_ids:
        raise ValidationError("Selecciona al menos un servicio")

    rows = db.scalars(
        select(Service).where(
            Service.id.in_(unique_ids),
            Service.tenant_id == tenant_id,
            Service.is_active.is_(True),
        )
    ).all()
    by_id = {s.id: s for s in rows}
    missing = [sid for sid in unique_ids if sid not in by_id]
    if missing:
        raise ValidationError("Servicio no disponible")
    return [by_id[sid] for sid in unique_ids]


def list_active_services(db: Session, tenant_id: UUID) -> list[Service]:
    return list(db.scalars(
        select(Service)
        .where(Service.tenant_id == tenant_id, Service.is_active.is_(True))
        .order_by(Service.name)
    ))


# =============================================================================
# Clients & resources
# =============================================================================

def normalize_phone(phone: str) -> str:
    """Strip formatting, keeping a leading + and digits."""
    phone = phone.strip()
    digits = re.sub(r"\D", "", phone)
    return f"+{digits}" if phone.startswith("+") else digits


def get_client(db: Session, tenant_id: UUID, client_id: UUID) -> Client:
    client = db.scalar(
        select(Client).where(Client.id == client_id, Client.tenant_id == tenant_id)
    )
    if not client:
        raise ValidationError("Cliente no encontrado")
    return client


def find_or_create_client(
    db: Session,
    tenant_id: UUID,
    name: str,
    phone: str,
    email: str | None = None,
) -> Client:
    """
    Match a client by (tenant, phone) or create one.

    Public bookings identify clients by phone only; an existing client's
    name is kept, email is filled in if missing. Caller commits.
    """
    name = name.strip()
    if not name:
        raise ValidationError("El nombre es obligatorio")
    normalized = normalize_phone(phone)
    if not normalized.lstrip("+"):
        raise ValidationError("El telefono es obligatorio")

    client = db.scalar(
        select(Client)
        .where(Client.tenant_id == tenant_id, Client.phone == normalized)
        .order_by(Client.created_at)
        .limit(1)
    )
    if client:
        if email and not client.email:
            client.email = email
        return client

    client = Client(tenant_id=tenant_id, name=name, phone=normalized, email=email)
    db.add(client)
    db.flush()
    return client


def validate_resources(
    db: Session,
    tenant_id: UUID,
    specialist_id: UUID | None,
    cabin_id: UUID | None,
) -> None:
    """Specialist and cabin, when given, must belong to the tenant."""
    if specialist_id and not db.scalar(
        select(TeamMember.id).where(
            TeamMember.id == specialist_id, TeamMember.tenant_id == tenant_id
        )
    ):
        raise ValidationError("Especialista no encontrado")
    if cabin_id and not db.scalar(
        select(Cabin.id).where(Cabin.id == cabin_id, Cabin.tenant_id == tenant_id)
    ):
        raise ValidationError("Cabina no encontrada")
