"""FastAPI dependencies resolving the current user.

Token lookup order: `Authorization: Bearer <jwt>`, then the provider's
session cookie. Repeated bad tokens from one client trip the lockout guard
before any validation work is done.
"""
import logging
from typing import Optional

from fastapi import Request

from abuse.lockout import (
    auth_lockout_config,
    check_lockout,
    clear_failed_attempts,
    record_failed_attempt,
)
from abuse.rate_limit import client_key
from auth.tokens import AuthUser, validate_token
from config.settings import get_settings
from core.exceptions import AccountLockedError, AuthError

logger = logging.getLogger(__name__)


def extract_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    return request.cookies.get(get_settings().AUTH_COOKIE_NAME) or None


async def get_current_user(request: Request) -> AuthUser:
    """Resolve the authenticated user or raise AuthError (401)."""
    subject = client_key(request)
    config = auth_lockout_config()

    lock = check_lockout(subject, config)
    if lock.is_locked:
        raise AccountLockedError(retry_after=lock.retry_after)

    token = extract_token(request)
    if token is None:
        raise AuthError("Authentication required")

    try:
        user = validate_token(token)
    except AuthError:
        result = record_failed_attempt(subject, config)
        logger.info(
            "Auth failed: client=%s remaining_attempts=%d",
            subject, result.remaining_attempts,
        )
        raise

    clear_failed_attempts(subject)
    return user
