"""
Caller identity.

Sign-in happens upstream; requests arrive with either a bearer JWT signed
with ``AUTH_SECRET`` (carrying an ``email`` claim) or, on trusted internal
deployments, an ``X-User-Email`` header.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt

from pecup.config import Settings, get_settings

logger = logging.getLogger(__name__)


def decode_session_token(token: str, settings: Settings) -> Optional[str]:
    if not settings.auth_secret:
        return None
    try:
        claims = jwt.decode(
            token, settings.auth_secret, algorithms=[settings.auth_algorithm]
        )
    except JWTError as exc:
        logger.info("Rejected session token: %s", exc)
        return None
    email = claims.get("email")
    return email.strip().lower() if isinstance(email, str) and email.strip() else None


def create_session_token(email: str, settings: Settings, expires_in: int = 3600) -> str:
    """Issue a session token; used by tooling and tests."""
    claims = {"email": email, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, settings.auth_secret, algorithm=settings.auth_algorithm)


def get_session_email(
    authorization: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """Return the signed-in user's lower-cased email, or ``None``."""
    if authorization and authorization.lower().startswith("bearer "):
        email = decode_session_token(authorization[7:].strip(), settings)
        if email:
            return email
    if settings.trust_email_header and x_user_email and x_user_email.strip():
        return x_user_email.strip().lower()
    return None
