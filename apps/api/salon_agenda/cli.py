"""CLI tools for salon agenda administration."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import click
from sqlalchemy import select
from sqlalchemy.orm import joinedload

from salon_agenda.core.config import settings
from salon_agenda.db.enums import TERMINAL_STATUSES, Role
from salon_agenda.db.models import Appointment, Tenant, User
from salon_agenda.db.session import SessionLocal
from salon_agenda.services import catalog_service
from salon_agenda.services.availability_service import DAY_NAMES, get_timezone
from salon_agenda.services.errors import BookingError
from salon_agenda.services.reminder_watcher import ReminderAlert, ReminderWatcher

DEFAULT_HOURS = {
    day: {"enabled": day != "sunday", "open": "09:00", "close": "18:00"}
    for day in DAY_NAMES
}


@click.group()
def cli():
    """Salon agenda CLI tools."""
    pass


@cli.command()
@click.option("--name", required=True, help="Business name")
@click.option("--slug", required=True, help="Public booking slug (lowercase, no spaces)")
@click.option("--owner-email", required=True, help="Owner email address")
@click.option("--owner-name", default="Owner", help="Owner display name")
@click.option("--timezone", "timezone_name", default=settings.DEFAULT_TIMEZONE, help="IANA timezone")
def create_tenant(name: str, slug: str, owner_email: str, owner_name: str, timezone_name: str):
    """
    Create a tenant with default business hours and its owner user.

    Example:
        python -m salon_agenda.cli create-tenant --name "Spa Luna" --slug spa-luna --owner-email owner@spaluna.com
    """
    db = SessionLocal()
    try:
        slug = slug.lower().strip()
        if not slug.replace("-", "").replace("_", "").isalnum():
            click.echo("❌ Slug must be alphanumeric (with optional hyphens/underscores)")
            return

        if get_timezone(timezone_name).key != timezone_name:
            click.echo(f"❌ Unknown timezone '{timezone_name}'")
            return

        if db.scalar(select(User.id).where(User.email == owner_email.lower())):
            click.echo(f"❌ User {owner_email} already exists")
            return

        tenant = catalog_service.create_tenant(db, name, slug, timezone_name, DEFAULT_HOURS)
        owner = User(
            tenant_id=tenant.id,
            email=owner_email.lower(),
            display_name=owner_name,
            role=Role.OWNER.value,
        )
        db.add(owner)
        db.commit()

        click.echo(f"✓ Created tenant: {name}")
        click.echo(f"  ID: {tenant.id}")
        click.echo(f"  Slug: {slug} (public page: {settings.FRONTEND_URL.rstrip('/')}/book/{slug})")
        click.echo(f"✓ Created owner {owner_email}")

    except BookingError as e:
        db.rollback()
        click.echo(f"❌ {e.message}")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


def _load_upcoming(tenant_id, horizon_minutes: int) -> list[Appointment]:
    """Non-terminal appointments starting within the reminder horizon."""
    now = datetime.now(timezone.utc)
    with SessionLocal() as db:
        rows = db.scalars(
            select(Appointment)
            .options(joinedload(Appointment.client))
            .where(
                Appointment.tenant_id == tenant_id,
                Appointment.start_time >= now,
                Appointment.start_time <= now + timedelta(minutes=horizon_minutes + 1),
                Appointment.status.not_in([s.value for s in TERMINAL_STATUSES]),
            )
            .order_by(Appointment.start_time)
        ).all()
        db.expunge_all()
        return list(rows)


@cli.command()
@click.option("--tenant-slug", required=True, help="Tenant whose agenda to watch")
def watch_reminders(tenant_slug: str):
    """Poll the agenda and print an alert 60, 30 and 15 minutes before each appointment."""
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    with SessionLocal() as db:
        tenant = db.scalar(select(Tenant).where(Tenant.slug == tenant_slug.lower()))
        if not tenant:
            click.echo(f"❌ Tenant '{tenant_slug}' not found")
            return
        tenant_id, tenant_tz = tenant.id, get_timezone(tenant.timezone)

    def sink(alert: ReminderAlert) -> None:
        local = alert.start_time.astimezone(tenant_tz)
        who = alert.client_name or "Cita"
        click.echo(f"⏰ {who}: cita en {alert.threshold_minutes} minutos ({local:%H:%M})")

    watcher = ReminderWatcher(sink)
    horizon = max(watcher.thresholds)
    stop_event = asyncio.Event()

    click.echo(f"→ Watching {tenant_slug} (Ctrl+C to stop)")
    try:
        asyncio.run(watcher.run(lambda: _load_upcoming(tenant_id, horizon), stop_event))
    except KeyboardInterrupt:
        click.echo("✓ Stopped")


if __name__ == "__main__":
    cli()
