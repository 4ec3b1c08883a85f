"""Usage time math — pure functions shared by the ping path and the stream.

Every elapsed-time figure a client ever sees is produced here, so the
writer (ping) and the read-only projection (stream) cannot drift apart.

Rules:
  - cap wins over expiry when both hold
  - capped sessions end at max_end_at, expired ones at last_seen_at + TTL
  - ended_at never exceeds max_end_at; durations are whole seconds, >= 0
"""
import math
from datetime import datetime, timedelta
from typing import Optional, Tuple

from schemas.usage import SessionStatus, UsageSession


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end, floored, never negative."""
    return max(0, math.floor((end - start).total_seconds()))


def expires_at(session: UsageSession, ttl_s: int) -> datetime:
    """Liveness deadline: last heartbeat + TTL."""
    return session.last_seen_at + timedelta(seconds=ttl_s)


def evaluate_auto_close(
    session: UsageSession,
    now: datetime,
    ttl_s: int,
) -> Optional[Tuple[SessionStatus, datetime]]:
    """Decide whether an active session has lapsed.

    Returns (terminal_status, ended_at) or None when it is still live.
    """
    if now >= session.max_end_at:
        return SessionStatus.CAPPED, session.max_end_at
    deadline = expires_at(session, ttl_s)
    if now > deadline:
        return SessionStatus.EXPIRED, min(deadline, session.max_end_at)
    return None


def effective_end(session: UsageSession, now: datetime, ttl_s: int) -> datetime:
    """Instant up to which an active session is billable as of now."""
    lapsed = evaluate_auto_close(session, now, ttl_s)
    if lapsed is not None:
        return lapsed[1]
    return min(now, session.max_end_at)


def current_session_seconds(session: Optional[UsageSession], now: datetime, ttl_s: int) -> int:
    """Billable seconds of the in-progress session (0 when none)."""
    if session is None or session.status != SessionStatus.ACTIVE:
        return 0
    return elapsed_seconds(session.started_at, effective_end(session, now, ttl_s))


def time_remaining_seconds(limit_minutes: int, closed_seconds: int, current_seconds: int = 0) -> int:
    """Budget left: limit minus (closed usage + in-progress usage), floored at 0."""
    return max(0, limit_minutes * 60 - (closed_seconds + current_seconds))


def close_patch(
    session: UsageSession,
    status: SessionStatus,
    ended_at: datetime,
    now: datetime,
) -> dict:
    """Fields written exactly once when a session leaves the active state."""
    ended_at = min(ended_at, session.max_end_at)
    return {
        "status": status.value,
        "ended_at": ended_at,
        "duration_seconds": elapsed_seconds(session.started_at, ended_at),
        "updated_at": now,
    }
