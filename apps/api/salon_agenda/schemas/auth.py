"""Authentication-related schemas."""

from uuid import UUID

from pydantic import BaseModel

from salon_agenda.db.enums import Role


class StaffSession(BaseModel):
    """
    Full session context for authenticated staff requests.

    Returned by the get_current_session dependency; carries everything
    needed for tenant scoping and authorization.
    """
    user_id: UUID
    tenant_id: UUID
    role: Role
    email: str
    display_name: str
