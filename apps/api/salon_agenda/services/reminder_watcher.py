"""Reminder watcher - upcoming appointment alerts for the front desk.

Every interval the watcher looks at the agenda it is handed and raises an
alert when an appointment is exactly 60, 30 or 15 whole minutes away.
Each (appointment, threshold) pair alerts at most once per watcher.

A tick that runs late can skip an exact minute; that alert is lost, not
delivered late.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, NamedTuple
from uuid import UUID

from salon_agenda.core.config import settings
from salon_agenda.db.enums import TERMINAL_STATUSES, AppointmentStatus

logger = logging.getLogger(__name__)


class ReminderAlert(NamedTuple):
    appointment_id: UUID
    threshold_minutes: int
    start_time: datetime
    client_name: str | None = None

    @property
    def message(self) -> str:
        who = self.client_name or "Cita"
        return f"{who} en {self.threshold_minutes} minutos ({self.start_time:%H:%M} UTC)"


@dataclass
class ReminderContext:
    """Dedupe state owned by one watcher (one staff agenda view)."""
    seen: set[tuple[UUID, int]] = field(default_factory=set)

    def mark(self, appointment_id: UUID, threshold: int) -> bool:
        """Record the pair; False if it was already alerted."""
        key = (appointment_id, threshold)
        if key in self.seen:
            return False
        self.seen.add(key)
        return True

    def prune(self, upcoming_ids: set[UUID]) -> None:
        """Forget appointments that are no longer upcoming."""
        self.seen = {key for key in self.seen if key[0] in upcoming_ids}


AlertSink = Callable[[ReminderAlert], Any]
FetchAppointments = Callable[[], Iterable[Any] | Awaitable[Iterable[Any]]]


def minutes_until(start_time: datetime, now: datetime) -> int:
    """Whole minutes from now to start, truncated toward zero."""
    return int((start_time - now).total_seconds() / 60)


class ReminderWatcher:
    """
    Periodic evaluator over an appointment set.

    Appointments are any objects with id, start_time and status (and
    optionally client.name), typically the agenda the caller already
    loaded.
    """

    def __init__(
        self,
        sink: AlertSink,
        context: ReminderContext | None = None,
        thresholds: Iterable[int] | None = None,
        interval_seconds: float | None = None,
    ):
        self.sink = sink
        self.context = context or ReminderContext()
        self.thresholds = frozenset(
            settings.reminder_thresholds if thresholds is None else thresholds
        )
        self.interval_seconds = (
            settings.REMINDER_POLL_SECONDS if interval_seconds is None else interval_seconds
        )

    def evaluate(self, appointments: Iterable[Any], now: datetime) -> list[ReminderAlert]:
        alerts = []
        for appointment in appointments:
            if AppointmentStatus(appointment.status) in TERMINAL_STATUSES:
                continue
            minutes = minutes_until(appointment.start_time, now)
            if minutes not in self.thresholds:
                continue
            if not self.context.mark(appointment.id, minutes):
                continue
            client = getattr(appointment, "client", None)
            alerts.append(ReminderAlert(
                appointment_id=appointment.id,
                threshold_minutes=minutes,
                start_time=appointment.start_time,
                client_name=getattr(client, "name", None),
            ))
        return alerts

    def tick(self, appointments: Iterable[Any], now: datetime | None = None) -> list[ReminderAlert]:
        """
        Evaluate and deliver. A failing sink is logged, never raised.

        Dedupe keys of appointments missing from this set, or already
        started, are dropped so a long-running watcher stays bounded.
        """
        now = now or datetime.now(timezone.utc)
        appointments = list(appointments)
        alerts = self.evaluate(appointments, now)
        self.context.prune({a.id for a in appointments if a.start_time > now})
        for alert in alerts:
            try:
                self.sink(alert)
            except Exception as e:
                logger.warning(
                    "Reminder sink failed for appointment %s: %s", alert.appointment_id, e
                )
        return alerts

    async def run(self, fetch_appointments: FetchAppointments, stop_event: asyncio.Event) -> None:
        """Tick every interval until stop_event is set."""
        logger.info(
            "Reminder watcher starting (interval: %ss, thresholds: %s)",
            self.interval_seconds, sorted(self.thresholds, reverse=True),
        )
        while not stop_event.is_set():
            try:
                appointments = fetch_appointments()
                if inspect.isawaitable(appointments):
                    appointments = await appointments
                self.tick(appointments)
            except Exception as e:
                logger.error(f"Error in reminder watcher loop: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Reminder watcher stopped")
