"""Audit logging service - appointment change tracking.

Audit writes never break the operation they describe: entries are written
in a SAVEPOINT, and any failure is logged and swallowed.

Guidelines:
- NEVER log confirmation tokens
- Use IDs instead of raw client data where possible
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from salon_agenda.core.structured_logging import build_log_context
from salon_agenda.db.enums import AuditAction
from salon_agenda.db.models import AuditLog

logger = logging.getLogger(__name__)


def log_event(
    db: Session,
    tenant_id: UUID,
    action: AuditAction,
    entity_type: str,
    entity_id: UUID | None = None,
    details: dict[str, Any] | None = None,
    user_id: UUID | None = None,
) -> AuditLog | None:
    """
    Record an audit entry in the current transaction.

    Args:
        db: Database session
        tenant_id: Tenant context
        action: create / update / delete
        entity_type: Type of entity affected (e.g., 'appointment')
        entity_id: ID of the affected entity
        details: Additional context (ids, statuses, no PII)
        user_id: Staff user who acted (None for public actions)

    Returns:
        The entry, or None if it could not be written
    """
    try:
        with db.begin_nested():
            entry = AuditLog(
                tenant_id=tenant_id,
                user_id=user_id,
                action=action.value,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
            )
            db.add(entry)
        return entry
    except SQLAlchemyError as e:
        logger.warning(
            "Audit log write failed: %s",
            e,
            extra=build_log_context(tenant_id=tenant_id, user_id=user_id, appointment_id=entity_id),
        )
        return None
