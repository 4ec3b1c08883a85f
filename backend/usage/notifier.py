"""Usage Stream — server-push (SSE) view of one user's usage session.

Connection lifecycle: CONNECTING → OPEN → CLOSED. No reconnect logic here;
the client owns reconnection.

While open, three producers feed one outbound queue:
  - change feed: every change to the user's session rows → fresh snapshot
    (plus session:closed when a row left ACTIVE)
  - refresh loop: every STREAM_REFRESH_INTERVAL_S → snapshot, only while active
  - keep-alive loop: every STREAM_KEEPALIVE_INTERVAL_S → SSE comment frame

The stream only observes: snapshots come from engine.project(), which never
writes. Session transitions stay with the ping path.
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import anyio

from config.settings import get_settings
from core.exceptions import LiveCaptionError
from schemas.usage import CLOSE_REASONS, ChangeEvent, SessionSnapshot, StreamEventType, iso
from usage.engine import UsageSessionEngine

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": heartbeat\n\n"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def format_frame(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


def idle_snapshot() -> SessionSnapshot:
    """Safe fallback when a mid-stream snapshot cannot be computed."""
    return SessionSnapshot(status="idle")


class UsageStream:
    """One SSE connection for one user."""

    def __init__(self, engine: UsageSessionEngine, user_id: str, settings=None):
        self.engine = engine
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.state = ConnectionState.CONNECTING
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscription: Optional[AsyncIterator[ChangeEvent]] = None
        self._tasks: List[asyncio.Task] = []
        self._warned: Set[str] = set()
        self._closing = False

    async def open(self) -> None:
        """Send the initial snapshot and start the producers.

        Errors computing the initial snapshot propagate: the connection fails.
        """
        snapshot = await self.engine.project(self.user_id)
        self._emit_snapshot(snapshot)

        self._subscription = self.engine.store.subscribe(self.user_id)
        self._tasks = [
            asyncio.create_task(self._consume_changes(), name=f"usage-changes:{self.user_id}"),
            asyncio.create_task(self._refresh_loop(), name=f"usage-refresh:{self.user_id}"),
            asyncio.create_task(self._keepalive_loop(), name=f"usage-keepalive:{self.user_id}"),
        ]
        self.state = ConnectionState.OPEN
        logger.info("Usage stream opened: user=%s", self.user_id)

    async def frames(self) -> AsyncIterator[str]:
        """Outbound SSE frames until the stream is closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    async def aclose(self) -> None:
        """Tear down exactly once: unsubscribe, stop both timers, release the connection."""
        if self._closing:
            return
        self._closing = True

        # The server cancels the response task on disconnect; finish teardown anyway
        with anyio.CancelScope(shield=True):
            for task in self._tasks:
                task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

            if self._subscription is not None:
                try:
                    await self._subscription.aclose()
                except LiveCaptionError as e:
                    logger.warning("Unsubscribe error: user=%s error=%s", self.user_id, e.message)
                self._subscription = None

            self._queue.put_nowait(None)
            self.state = ConnectionState.CLOSED
            logger.info("Usage stream closed: user=%s", self.user_id)

    # ── Producers ────────────────────────────────────────────────

    async def _consume_changes(self) -> None:
        try:
            async for change in self._subscription:
                logger.debug(
                    "Change detected: user=%s op=%s session=%s status=%s",
                    self.user_id, change.operation, change.session_id, change.status,
                )
                snapshot = await self._safe_project()
                if change.session_id and change.status in CLOSE_REASONS:
                    self._emit(self._closed_event(change, snapshot))
                    self._emit_snapshot(snapshot)
                elif change.operation == "insert" and snapshot.is_active:
                    self._emit_snapshot(snapshot, StreamEventType.SESSION_CREATED)
                else:
                    self._emit_snapshot(snapshot)
        except LiveCaptionError as e:
            # Refresh and keep-alive carry on without the feed
            logger.error("Change feed failed: user=%s error=%s", self.user_id, e.message)

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.STREAM_REFRESH_INTERVAL_S)
            snapshot = await self._safe_project()
            if snapshot.is_active:
                self._emit_snapshot(snapshot)

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.STREAM_KEEPALIVE_INTERVAL_S)
            self._put(KEEPALIVE_FRAME)

    # ── Frame building ───────────────────────────────────────────

    async def _safe_project(self) -> SessionSnapshot:
        try:
            return await self.engine.project(self.user_id)
        except LiveCaptionError as e:
            logger.error("Snapshot failed, sending idle fallback: user=%s error=%s", self.user_id, e.message)
            return idle_snapshot()

    def _closed_event(self, change: ChangeEvent, snapshot: SessionSnapshot) -> Dict[str, Any]:
        return {
            "type": StreamEventType.SESSION_CLOSED.value,
            "sessionId": change.session_id,
            "endedAt": iso(change.ended_at),
            "totalUsageSeconds": snapshot.total_usage_seconds,
            "timeRemainingSeconds": snapshot.time_remaining_seconds,
            "reason": CLOSE_REASONS[change.status],
        }

    def _emit_snapshot(self, snapshot: SessionSnapshot, event_type: Optional[StreamEventType] = None) -> None:
        self._emit(snapshot.to_event(event_type))
        if (
            snapshot.is_active
            and snapshot.time_remaining_seconds <= self.settings.NEAR_LIMIT_WARNING_S
            and snapshot.session_id not in self._warned
        ):
            self._warned.add(snapshot.session_id)
            minutes = snapshot.time_remaining_seconds // 60
            self._emit({
                "type": StreamEventType.SESSION_WARNING.value,
                "sessionId": snapshot.session_id,
                "timeRemainingSeconds": snapshot.time_remaining_seconds,
                "message": f"{minutes} minutes of translation time remaining",
            })

    def _emit(self, event: Dict[str, Any]) -> None:
        self._put(format_frame(event))
        logger.debug("Sent event: user=%s type=%s", self.user_id, event["type"])

    def _put(self, frame: str) -> None:
        if self._closing:
            return
        self._queue.put_nowait(frame)
