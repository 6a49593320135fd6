"""Bearer token helpers.

Identity is issued by an external service; this module only verifies the
signature and expiry and extracts the subject.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from app.config import get_settings
from app.core.errors import UnauthenticatedError

settings = get_settings()


def create_access_token(data: Dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a signed JWT access token with an expiration time."""

    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta is not None else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT access token."""

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise UnauthenticatedError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise UnauthenticatedError() from exc
    return payload


def subject_from_token(token: str) -> str:
    """Return the user id carried in the ``sub`` claim."""

    payload = decode_access_token(token)
    sub = payload.get("sub")
    if sub is None or str(sub).strip() == "":
        raise UnauthenticatedError()
    return str(sub)
