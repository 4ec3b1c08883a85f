"""Auth — provider token validation and the current-user dependency."""
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from starlette.requests import Request

from auth.dependencies import extract_token, get_current_user
from auth.tokens import generate_token, validate_token
from config.settings import get_settings
from core.exceptions import AccountLockedError, AuthError


def _request(headers=None, cookies=None, host="10.0.0.1"):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        raw.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode()))
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/api/usage/session-data",
        "headers": raw,
        "query_string": b"",
        "client": (host, 50000),
    })


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestValidateToken:

    def test_valid_token(self):
        user = validate_token(generate_token("u1", email="u1@example.com"))
        assert user.id == "u1"
        assert user.email == "u1@example.com"
        assert user.email_confirmed is True

    def test_unconfirmed_email(self):
        user = validate_token(generate_token("u1", email_confirmed=False))
        assert user.email_confirmed is False

    def test_expired_token(self):
        with pytest.raises(AuthError, match="Token expired"):
            validate_token(generate_token("u1", expires_in_s=-30))

    def test_wrong_audience(self):
        token = jwt.encode(
            {"sub": "u1", "aud": "anon", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            get_settings().JWT_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(AuthError, match="Invalid token"):
            validate_token(token)

    def test_wrong_signature(self):
        token = jwt.encode(
            {"sub": "u1", "aud": "authenticated", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            "another-secret",
            algorithm="HS256",
        )
        with pytest.raises(AuthError, match="Invalid token"):
            validate_token(token)

    def test_missing_subject(self):
        token = jwt.encode(
            {"aud": "authenticated", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            get_settings().JWT_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(AuthError):
            validate_token(token)


class TestExtractToken:

    def test_bearer_header_first(self):
        request = _request(_bearer("header-token"), cookies={"sb-access-token": "cookie-token"})
        assert extract_token(request) == "header-token"

    def test_cookie_fallback(self):
        assert extract_token(_request(cookies={"sb-access-token": "cookie-token"})) == "cookie-token"

    def test_nothing(self):
        assert extract_token(_request({"Authorization": "Basic abc"})) is None


@pytest.mark.asyncio
class TestCurrentUser:

    async def test_resolves_user(self):
        user = await get_current_user(_request(_bearer(generate_token("u1"))))
        assert user.id == "u1"

    async def test_missing_token(self):
        with pytest.raises(AuthError, match="Authentication required"):
            await get_current_user(_request())

    async def test_repeated_bad_tokens_lock_the_client(self):
        max_attempts = get_settings().AUTH_LOCKOUT_MAX_ATTEMPTS
        for _ in range(max_attempts):
            with pytest.raises(AuthError):
                await get_current_user(_request(_bearer("garbage")))

        with pytest.raises(AccountLockedError) as exc:
            await get_current_user(_request(_bearer(generate_token("u1"))))
        assert exc.value.retry_after > 0

        # other clients are unaffected
        user = await get_current_user(_request(_bearer(generate_token("u1")), host="10.0.0.2"))
        assert user.id == "u1"

    async def test_success_clears_failures(self):
        max_attempts = get_settings().AUTH_LOCKOUT_MAX_ATTEMPTS
        for _ in range(max_attempts - 1):
            with pytest.raises(AuthError):
                await get_current_user(_request(_bearer("garbage")))
        await get_current_user(_request(_bearer(generate_token("u1"))))

        for _ in range(max_attempts - 1):
            with pytest.raises(AuthError):
                await get_current_user(_request(_bearer("garbage")))
        user = await get_current_user(_request(_bearer(generate_token("u1"))))
        assert user.id == "u1"
