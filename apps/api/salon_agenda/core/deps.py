"""FastAPI dependencies for authentication, authorization, and database access."""

from typing import Generator
from uuid import UUID

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from salon_agenda.core.security import decode_session_token
from salon_agenda.db.enums import ROLES_CAN_HARD_DELETE, Role
from salon_agenda.db.session import SessionLocal


# Cookie and header names
COOKIE_NAME = "salon_session"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Get authenticated staff user from session cookie.

    Validates:
    - Session cookie exists
    - JWT is valid and not expired
    - User exists and is active
    - Token version matches (for revocation support)

    Raises:
        HTTPException 401: Authentication failed
    """
    from salon_agenda.db.models import User

    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = decode_session_token(token)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid session")

    try:
        user_id = UUID(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid session")

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account disabled")

    if user.token_version != payload.get("token_version"):
        raise HTTPException(status_code=401, detail="Session revoked")

    return user


def get_current_session(
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Get full session context: user_id, tenant_id, role.

    This is the PRIMARY auth dependency for staff endpoints; the tenant
    every staff query is scoped by comes from here.

    Raises:
        HTTPException 401: Not authenticated
        HTTPException 403: Unknown role
    """
    from salon_agenda.schemas.auth import StaffSession

    user = get_current_user(request, db)

    if not Role.has_value(user.role):
        raise HTTPException(
            status_code=403,
            detail=f"Unknown role '{user.role}'. Contact administrator."
        )

    return StaffSession(
        user_id=user.id,
        tenant_id=user.tenant_id,
        role=Role(user.role),
        email=user.email,
        display_name=user.display_name,
    )


def require_csrf_header(request: Request) -> None:
    """
    Verify CSRF header on mutations.

    Raises:
        HTTPException 403: Missing or invalid CSRF header
    """
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise HTTPException(
            status_code=403,
            detail=f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'"
        )


def can_hard_delete(session) -> bool:
    """Check if user can permanently delete appointments."""
    return session.role in ROLES_CAN_HARD_DELETE


def http_error(error) -> HTTPException:
    """Translate a scheduling error (services.errors) into its HTTP response."""
    return HTTPException(status_code=error.status_code, detail=error.message)
