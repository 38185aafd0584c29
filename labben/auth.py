"""Dashboard caller authentication via the Supabase session JWT."""

from typing import Any

import structlog
from fastapi import Header, HTTPException
from jose import JWTError, jwt

from labben.config import settings

logger = structlog.get_logger()

JWT_ALGORITHM = "HS256"


def decode_session_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a Supabase access token. Returns None if invalid."""
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[JWT_ALGORITHM],
            audience=settings.supabase_jwt_audience,
        )
    except JWTError:
        return None


def get_caller_identity(authorization: str | None = Header(None)) -> str:
    """
    Resolve the signed-in dashboard user to an identity string (email, else user id).

    Only the allow-listed address may act when ``allowed_email`` is configured.
    """
    if not settings.supabase_jwt_secret:
        raise HTTPException(status_code=503, detail="Authentication not configured")

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = decode_session_token(authorization[7:])
    if payload is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    identity = payload.get("email") or payload.get("sub")
    if not identity:
        raise HTTPException(status_code=401, detail="Not authenticated")

    if settings.allowed_email and identity.lower() != settings.allowed_email.lower():
        logger.warning("caller_not_allowed")
        raise HTTPException(status_code=403, detail="Access denied")

    return identity
