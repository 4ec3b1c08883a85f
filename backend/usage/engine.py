"""Usage Session Engine — server-authoritative session lifecycle.

States:
  (none) → ACTIVE → CLOSED   (user stop)
                  → EXPIRED  (no heartbeat within TTL)
                  → CAPPED   (reached max_end_at; wins over EXPIRED)

Rules:
  - The store is the only source of truth; nothing is cached across calls
  - Auto-transitions are evaluated lazily at the top of every ping
  - Every write is conditioned on status == active (optimistic lock)
  - A duplicate create (multi-tab race) is recovered as a heartbeat
  - A heartbeat that loses the race to a close starts a fresh session
  - A failed close fails the request; it is never reported as success
  - project() is read-only: only ping() moves a session out of ACTIVE
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from billing.accounts import load_account
from config.settings import get_settings
from core.exceptions import DuplicateActiveSessionError, SessionCloseError, StoreError
from schemas.usage import SessionSnapshot, SessionStatus, UsageSession
from usage import metrics
from usage.store import SessionStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageSessionEngine:
    """Creates, renews, auto-closes and closes usage sessions for one store."""

    def __init__(
        self,
        store: SessionStore,
        settings=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def ttl_s(self) -> int:
        return self.settings.USAGE_TTL_S

    # ── Ping (the only writer) ───────────────────────────────────

    async def ping(self, user_id: str, active: bool) -> SessionSnapshot:
        """Apply a client's intent and return the resulting snapshot.

        active=True  → create a session, or heartbeat the existing one
        active=False → close the active session (if any) and report totals
        """
        req = uuid.uuid4().hex[:7]
        limit = await self._session_limit(user_id)
        now = self.clock()
        logger.info("Ping: req=%s user=%s active=%s", req, user_id, active)

        current = await self._load_active(user_id)
        if current is not None:
            lapsed = metrics.evaluate_auto_close(current, now, self.ttl_s)
            if lapsed is not None:
                status, ended_at = lapsed
                logger.info(
                    "Auto-closing: req=%s session=%s status=%s",
                    req, current.session_id, status.value,
                )
                await self._close(current, status, ended_at, now)

        # Re-read: the session may have just been closed above
        current = await self._load_active(user_id)

        if not active:
            if current is not None:
                logger.info("User stop: req=%s session=%s", req, current.session_id)
                await self._close(current, SessionStatus.CLOSED, min(now, current.max_end_at), now)
            else:
                logger.info("Stop ping with no active session: req=%s user=%s", req, user_id)
            closed = await self._closed_total(user_id)
            return SessionSnapshot(
                status=SessionStatus.CLOSED.value,
                time_remaining_seconds=metrics.time_remaining_seconds(limit, closed),
                total_usage_seconds=closed,
                current_session_seconds=0,
                closed_usage_seconds=closed,
            )

        if current is not None:
            current = await self._heartbeat(current, now)
            if current is None:
                logger.info("Session closed before heartbeat, starting a new one: req=%s user=%s", req, user_id)
        if current is None:
            current = await self._create_or_adopt(user_id, limit, now, req)

        closed = await self._closed_total(user_id)
        return self.build_snapshot(current, limit, closed, now)

    # ── Projection (read-only, used by the stream) ───────────────

    async def project(self, user_id: str) -> SessionSnapshot:
        """Current snapshot without touching any row.

        A lapsed-but-unclosed session still reports status active (that is
        what the store holds) but its elapsed time stops at the instant the
        next ping would close it.
        """
        limit = await self._session_limit(user_id)
        now = self.clock()
        current = await self._load_active(user_id)
        closed = await self._closed_total(user_id)
        return self.build_snapshot(current, limit, closed, now)

    def build_snapshot(
        self,
        session: Optional[UsageSession],
        limit_minutes: int,
        closed_seconds: int,
        now: datetime,
    ) -> SessionSnapshot:
        if session is None:
            return SessionSnapshot(
                status="idle",
                time_remaining_seconds=metrics.time_remaining_seconds(limit_minutes, closed_seconds),
                total_usage_seconds=closed_seconds,
                closed_usage_seconds=closed_seconds,
            )
        current = metrics.current_session_seconds(session, now, self.ttl_s)
        return SessionSnapshot(
            session_id=session.session_id,
            status=session.status.value,
            started_at=session.started_at,
            expires_at=metrics.expires_at(session, self.ttl_s),
            cap_at=session.max_end_at,
            time_remaining_seconds=metrics.time_remaining_seconds(limit_minutes, closed_seconds, current),
            total_usage_seconds=closed_seconds + current,
            current_session_seconds=current,
            closed_usage_seconds=closed_seconds,
        )

    # ── Helpers ──────────────────────────────────────────────────

    async def _session_limit(self, user_id: str) -> int:
        account = await load_account(self.store, user_id)
        return account.session_limit_minutes or self.settings.DEFAULT_SESSION_LIMIT_MINUTES

    async def _load_active(self, user_id: str) -> Optional[UsageSession]:
        doc = await self.store.find_active(user_id)
        return UsageSession.from_doc(doc) if doc else None

    async def _create(self, user_id: str, limit_minutes: int, now: datetime) -> UsageSession:
        session = UsageSession(
            user_id=user_id,
            status=SessionStatus.ACTIVE,
            started_at=now,
            last_seen_at=now,
            max_end_at=now + timedelta(minutes=limit_minutes),
            created_at=now,
            updated_at=now,
        )
        doc = await self.store.insert_active(session.to_doc())
        return UsageSession.from_doc(doc)

    async def _create_or_adopt(self, user_id: str, limit_minutes: int, now: datetime, req: str) -> UsageSession:
        try:
            session = await self._create(user_id, limit_minutes, now)
            logger.info("Session created: req=%s session=%s user=%s", req, session.session_id, user_id)
            return session
        except DuplicateActiveSessionError:
            logger.warning("Duplicate session detected, adopting existing: req=%s user=%s", req, user_id)
        existing = await self._load_active(user_id)
        adopted = await self._heartbeat(existing, now) if existing is not None else None
        if adopted is None:
            raise StoreError("Failed to create or fetch session")
        return adopted

    async def _heartbeat(self, session: UsageSession, now: datetime) -> Optional[UsageSession]:
        """Renew the TTL lease. Returns None if the session was closed under us."""
        renewed = await self.store.update_where(
            session.session_id,
            SessionStatus.ACTIVE.value,
            {"last_seen_at": now, "updated_at": now},
        )
        if not renewed:
            logger.warning("Heartbeat lost race, session no longer active: session=%s", session.session_id)
            return None
        return session.model_copy(update={"last_seen_at": now, "updated_at": now})

    async def _close(
        self,
        session: UsageSession,
        status: SessionStatus,
        ended_at: datetime,
        now: datetime,
    ) -> None:
        patch = metrics.close_patch(session, status, ended_at, now)
        try:
            closed = await self.store.update_where(session.session_id, SessionStatus.ACTIVE.value, patch)
        except StoreError as e:
            logger.error("Close failed: session=%s status=%s error=%s", session.session_id, status.value, e.message)
            raise SessionCloseError(f"Failed to close session {session.session_id}") from e
        if closed:
            logger.info(
                "Session closed: session=%s status=%s duration=%ds",
                session.session_id, status.value, patch["duration_seconds"],
            )
        else:
            logger.info("Session already closed by a concurrent request: session=%s", session.session_id)

    async def _closed_total(self, user_id: str) -> int:
        """Sum of finished sessions. Display-only read: degrades to 0."""
        try:
            return await self.store.sum_closed_durations(user_id)
        except StoreError as e:
            logger.warning("Total usage unavailable, reporting 0: user=%s error=%s", user_id, e.message)
            return 0
