"""Security utilities for JWT session tokens and confirmation tokens."""

import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from salon_agenda.core.config import settings


# =============================================================================
# Session Token (JWT in cookie)
# =============================================================================

def create_session_token(
    user_id: UUID,
    tenant_id: UUID,
    role: str,
    token_version: int,
) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET).
    Token contains user identity, tenant context, and revocation version.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "tenant_id": str(tenant_id),
        "role": role,
        "token_version": token_version,
        "iat": now,
        "exp": now + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


# =============================================================================
# Appointment confirmation links
# =============================================================================

def generate_confirmation_token() -> str:
    """Unguessable public token (32 bytes, URL-safe base64)."""
    return secrets.token_urlsafe(32)
