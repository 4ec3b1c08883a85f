"""Usage API — ping (start / heartbeat / stop), live stream, session data.

POST /usage/ping          {active: bool} → session snapshot
GET  /usage/stream        text/event-stream of snapshots
GET  /usage/session-data  account facts + active session + totals
"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from abuse.rate_limit import (
    RATE_LIMIT_CONFIGS,
    check_rate_limit,
    client_key,
    usage_ping_config,
    user_key,
)
from auth.dependencies import get_current_user
from auth.tokens import AuthUser
from billing.accounts import load_account
from billing.subscription import (
    get_session_limit,
    get_subscription_status_message,
    is_cancelled_subscription_active,
    is_valid_for_translation,
    requires_subscription_attention,
)
from core.exceptions import InvalidRequestError, RateLimitedError
from observability.redaction import redact_dict
from schemas.usage import PingRequest, UsageSession, iso
from usage.engine import UsageSessionEngine
from usage.notifier import UsageStream
from usage.store import get_session_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # nginx
}


def get_engine() -> UsageSessionEngine:
    return UsageSessionEngine(get_session_store())


def _enforce(key: str, config) -> None:
    result = check_rate_limit(key, config)
    if not result.allowed:
        raise RateLimitedError(retry_after=result.retry_after)


async def _parse_ping(request: Request, user_id: str) -> PingRequest:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Malformed ping body: user=%s", user_id)
        raise InvalidRequestError("Invalid request: body must be JSON")
    try:
        return PingRequest.model_validate(body)
    except ValidationError:
        shown = redact_dict(body) if isinstance(body, dict) else type(body).__name__
        logger.warning("Invalid ping from user=%s body=%s", user_id, shown)
        raise InvalidRequestError("Invalid request: active must be a boolean")


@router.post("/ping")
async def ping(
    request: Request,
    user: AuthUser = Depends(get_current_user),
    engine: UsageSessionEngine = Depends(get_engine),
) -> Dict[str, Any]:
    _enforce(user_key(user.id), usage_ping_config())
    req = await _parse_ping(request, user.id)
    snapshot = await engine.ping(user.id, req.active)
    return snapshot.to_response()


@router.get("/stream")
async def stream(
    request: Request,
    user: AuthUser = Depends(get_current_user),
    engine: UsageSessionEngine = Depends(get_engine),
):
    _enforce(client_key(request), RATE_LIMIT_CONFIGS["API"])

    usage_stream = UsageStream(engine, user.id)
    await usage_stream.open()

    async def event_source():
        try:
            async for frame in usage_stream.frames():
                if await request.is_disconnected():
                    break
                yield frame
        finally:
            await usage_stream.aclose()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/session-data")
async def session_data(
    user: AuthUser = Depends(get_current_user),
    engine: UsageSessionEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Account facts and usage totals for dashboard rendering."""
    account = await load_account(engine.store, user.id)
    snapshot = await engine.project(user.id)

    active_doc = await engine.store.find_active(user.id)
    active = UsageSession.from_doc(active_doc) if active_doc else None
    now = engine.clock()

    return {
        "user": {
            "id": account.user_id,
            "email": account.email,
            "email_confirmed": user.email_confirmed,
            "subscription_status": account.subscription_status,
            "subscription_period_end": iso(account.subscription_period_end),
            "session_limit_minutes": account.session_limit_minutes,
        },
        "active_session": {
            "id": active.session_id,
            "started_at": iso(active.started_at),
            "last_seen_at": iso(active.last_seen_at),
            "max_end_at": iso(active.max_end_at),
            "status": active.status.value,
        } if active else None,
        "session_limit_minutes": get_session_limit(
            account.subscription_status,
            account.session_limit_minutes,
            engine.settings.DEFAULT_SESSION_LIMIT_MINUTES,
        ),
        "is_valid_subscription": is_valid_for_translation(account.subscription_status),
        "subscription_message": get_subscription_status_message(account.subscription_status),
        "requires_subscription_attention": requires_subscription_attention(account.subscription_status),
        "has_cancelled_access": is_cancelled_subscription_active(
            account.subscription_status, account.subscription_period_end, now,
        ),
        "total_usage_seconds": snapshot.total_usage_seconds,
        "total_usage_minutes": snapshot.total_usage_seconds // 60,
        "time_remaining_seconds": snapshot.time_remaining_seconds,
        "is_session_expired": bool(active and now >= active.max_end_at),
    }
