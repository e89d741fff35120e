"""Structured logging helpers (PII-safe).

Client names, phones and confirmation tokens never go into log context;
use ids.
"""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    tenant_id: UUID | str | None = None,
    user_id: UUID | str | None = None,
    appointment_id: UUID | str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for `extra=`."""
    context: dict[str, Any] = {}
    if tenant_id:
        context["tenant_id"] = str(tenant_id)
    if user_id:
        context["user_id"] = str(user_id)
    if appointment_id:
        context["appointment_id"] = str(appointment_id)
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
