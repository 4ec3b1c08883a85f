"""Lockout guard — blocks a subject after repeated failures.

Subjects are lower-cased (emails, client keys). Records live in the
process-local counter store and vanish on restart.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from abuse.counter_store import get_counter_store
from config.settings import get_settings

logger = logging.getLogger(__name__)

_PREFIX = "lockout:"


@dataclass(frozen=True)
class LockoutConfig:
    max_attempts: int
    lockout_duration_s: int
    window_s: int


@dataclass
class LockoutResult:
    is_locked: bool
    remaining_attempts: int
    lockout_until: Optional[float] = None
    retry_after: Optional[int] = None


@dataclass
class _Record:
    attempts: int
    lockout_until: float
    last_attempt: float


LOCKOUT_CONFIGS = {
    "STANDARD": LockoutConfig(max_attempts=5, lockout_duration_s=15 * 60, window_s=15 * 60),
    "STRICT": LockoutConfig(max_attempts=3, lockout_duration_s=60 * 60, window_s=10 * 60),
    "VERY_STRICT": LockoutConfig(max_attempts=3, lockout_duration_s=24 * 60 * 60, window_s=5 * 60),
}


def auth_lockout_config() -> LockoutConfig:
    settings = get_settings()
    return LockoutConfig(
        max_attempts=settings.AUTH_LOCKOUT_MAX_ATTEMPTS,
        lockout_duration_s=settings.AUTH_LOCKOUT_DURATION_S,
        window_s=settings.AUTH_LOCKOUT_WINDOW_S,
    )


def _key(subject: str) -> str:
    return f"{_PREFIX}{subject.lower()}"


def _is_stale(record: _Record, config: LockoutConfig, now: float) -> bool:
    if record.lockout_until:
        return now > record.lockout_until
    return now > record.last_attempt + config.window_s


def check_lockout(
    subject: str,
    config: LockoutConfig,
    now: Optional[float] = None,
) -> LockoutResult:
    """Report whether subject is currently locked. Clears stale records."""
    now = time.time() if now is None else now
    store = get_counter_store()
    key = _key(subject)
    record: Optional[_Record] = store.get(key)

    if record is None:
        return LockoutResult(is_locked=False, remaining_attempts=config.max_attempts)

    if _is_stale(record, config, now):
        store.delete(key)
        return LockoutResult(is_locked=False, remaining_attempts=config.max_attempts)

    if not record.lockout_until:
        return LockoutResult(
            is_locked=False,
            remaining_attempts=max(0, config.max_attempts - record.attempts),
        )

    return LockoutResult(
        is_locked=True,
        remaining_attempts=0,
        lockout_until=record.lockout_until,
        retry_after=math.ceil(record.lockout_until - now),
    )


def record_failed_attempt(
    subject: str,
    config: LockoutConfig,
    now: Optional[float] = None,
) -> LockoutResult:
    """Count a failure; locks the subject once max_attempts is reached."""
    now = time.time() if now is None else now
    store = get_counter_store()
    key = _key(subject)
    record: Optional[_Record] = store.get(key)

    if record is None or _is_stale(record, config, now):
        record = _Record(attempts=1, lockout_until=0.0, last_attempt=now)
    else:
        record.attempts += 1
        record.last_attempt = now

    if record.attempts >= config.max_attempts:
        record.lockout_until = now + config.lockout_duration_s
        logger.warning(
            "LOCKOUT: subject=%s attempts=%d duration=%ds",
            subject[:40], record.attempts, config.lockout_duration_s,
        )

    store.set(key, record)

    locked = record.attempts >= config.max_attempts
    return LockoutResult(
        is_locked=locked,
        remaining_attempts=max(0, config.max_attempts - record.attempts),
        lockout_until=record.lockout_until if locked else None,
        retry_after=math.ceil(record.lockout_until - now) if locked else None,
    )


def clear_failed_attempts(subject: str) -> None:
    """Forget failures for subject (e.g. after a successful sign-in)."""
    get_counter_store().delete(_key(subject))


def get_lockout_stats(now: Optional[float] = None) -> dict:
    now = time.time() if now is None else now
    active = expired = 0
    for _, record in get_counter_store().items(_PREFIX):
        if now > record.lockout_until:
            expired += 1
        else:
            active += 1
    return {
        "total_locked_accounts": active + expired,
        "active_lockouts": active,
        "expired_lockouts": expired,
    }
