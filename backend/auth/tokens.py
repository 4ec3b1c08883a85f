"""Access-token validation for the external auth provider.

The provider signs short-lived JWTs (HS256 by default) carrying:
  sub                 — user id (opaque, owned by the provider)
  email               — account email
  email_confirmed_at  — set once the address is verified
  aud                 — must equal JWT_AUDIENCE

This module only consumes those facts; sign-up, sign-in, reset and OAuth
live with the provider.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from config.settings import get_settings
from core.exceptions import AuthError

logger = logging.getLogger(__name__)


def _require_jwt_secret() -> str:
    """Read JWT secret and fail closed if configuration is invalid."""
    secret = get_settings().JWT_SECRET
    if not secret:
        raise AuthError("JWT secret is not configured")
    return secret


class AuthUser(BaseModel):
    """Current authenticated user, as asserted by the auth provider."""
    id: str
    email: Optional[str] = None
    email_confirmed: bool = False


def validate_token(token: str) -> AuthUser:
    """Validate and decode an access token. Raises AuthError on failure."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            _require_jwt_secret(),
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        raise AuthError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token: %s", str(e))
        raise AuthError(f"Invalid token: {str(e)}")

    return AuthUser(
        id=str(payload["sub"]),
        email=payload.get("email"),
        email_confirmed=bool(payload.get("email_confirmed_at")),
    )


def generate_token(
    user_id: str,
    email: Optional[str] = None,
    email_confirmed: bool = True,
    expires_in_s: int = 3600,
) -> str:
    """Sign a provider-compatible token. DEV/TEST only — production tokens come from the provider."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": settings.JWT_AUDIENCE,
        "email": email,
        "email_confirmed_at": now.isoformat() if email_confirmed else None,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in_s),
    }
    return jwt.encode(payload, _require_jwt_secret(), algorithm=settings.JWT_ALGORITHM)
