"""Caller identity from session tokens issued by the authentication provider."""
from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.orm import Session

from dealflow.models import UserSession


def token_from_request(authorization: str | None, cookie_token: str | None) -> str | None:
    """``Authorization: Bearer <token>`` wins over the cookie."""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token:
            return token
    return cookie_token or None


def user_id_for_token(session: Session, token: str | None) -> str | None:
    """User id for a live token, None when unknown or expired."""
    if not token:
        return None
    record = session.get(UserSession, token)
    if record is None:
        return None
    if record.expires_at is not None and record.expires_at < datetime.now(UTC).replace(tzinfo=None):
        return None
    return record.user_id
