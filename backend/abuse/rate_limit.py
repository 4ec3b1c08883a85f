"""Rate Limiter — fixed-window request counters.

Per client / per user limits, held in the process-local counter store.
A refused request never reaches session logic.

Limits:
  - AUTH: 5 attempts / 15 min
  - PASSWORD_RESET: 3 attempts / hour
  - API: 100 requests / 15 min
  - OAUTH_CALLBACK: 10 attempts / 15 min
  - USAGE_PING: settings-driven (PING_RATE_LIMIT_MAX / PING_RATE_LIMIT_WINDOW_S)
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from starlette.requests import HTTPConnection

from abuse.counter_store import get_counter_store
from config.settings import get_settings

logger = logging.getLogger(__name__)

_PREFIX = "rate_limit:"


@dataclass(frozen=True)
class RateLimitConfig:
    window_s: int
    max_attempts: int
    name: str = "custom"


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


@dataclass
class _Window:
    count: int
    reset_at: float


RATE_LIMIT_CONFIGS = {
    "AUTH": RateLimitConfig(window_s=15 * 60, max_attempts=5, name="auth"),
    "PASSWORD_RESET": RateLimitConfig(window_s=60 * 60, max_attempts=3, name="password_reset"),
    "API": RateLimitConfig(window_s=15 * 60, max_attempts=100, name="api"),
    "OAUTH_CALLBACK": RateLimitConfig(window_s=15 * 60, max_attempts=10, name="oauth_callback"),
}


def usage_ping_config() -> RateLimitConfig:
    settings = get_settings()
    return RateLimitConfig(
        window_s=settings.PING_RATE_LIMIT_WINDOW_S,
        max_attempts=settings.PING_RATE_LIMIT_MAX,
        name="usage_ping",
    )


def check_rate_limit(
    key: str,
    config: RateLimitConfig,
    now: Optional[float] = None,
) -> RateLimitResult:
    """Count one hit against key and report whether it is allowed.

    Args:
        key: Bucket key (see client_key / user_key)
        config: Window length and attempt ceiling
        now: Epoch seconds; defaults to time.time()
    """
    now = time.time() if now is None else now
    store = get_counter_store()
    bucket = f"{_PREFIX}{config.name}:{key}"
    record: Optional[_Window] = store.get(bucket)

    if record is None or now > record.reset_at:
        record = _Window(count=1, reset_at=now + config.window_s)
        store.set(bucket, record)
        return RateLimitResult(
            allowed=True,
            remaining=config.max_attempts - 1,
            reset_at=record.reset_at,
        )

    if record.count >= config.max_attempts:
        retry_after = max(1, math.ceil(record.reset_at - now))
        logger.warning(
            "RATE_LIMITED: type=%s key=%s count=%d max=%d",
            config.name, key[:40], record.count, config.max_attempts,
        )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=record.reset_at,
            retry_after=retry_after,
        )

    record.count += 1
    store.set(bucket, record)
    return RateLimitResult(
        allowed=True,
        remaining=config.max_attempts - record.count,
        reset_at=record.reset_at,
    )


def client_key(conn: HTTPConnection) -> str:
    """Best client address: first X-Forwarded-For hop, then proxy headers, then peer."""
    forwarded_for = conn.headers.get("x-forwarded-for")
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
    else:
        ip = (
            conn.headers.get("x-real-ip")
            or conn.headers.get("cf-connecting-ip")
            or (conn.client.host if conn.client else None)
            or "unknown"
        )
    return f"ip:{ip}"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def clear_rate_limit(key: str, config: RateLimitConfig) -> None:
    get_counter_store().delete(f"{_PREFIX}{config.name}:{key}")


def get_rate_limit_stats(now: Optional[float] = None) -> dict:
    """Counts for monitoring: total / live / stale windows."""
    now = time.time() if now is None else now
    active = expired = 0
    for _, record in get_counter_store().items(_PREFIX):
        if now > record.reset_at:
            expired += 1
        else:
            active += 1
    return {"total_keys": active + expired, "active_keys": active, "expired_keys": expired}
