"""Usage session client — the caller-side mirror of the server's session state.

Single source of session state for a captioning client (desktop app,
kiosk, integration test harness). Mirrors the dashboard hook:

  - start_session() / stop_session() issue ping(active) and adopt the reply
  - the SSE stream overwrites state wholesale on every data event
  - transport errors reconnect with backoff 1s, 2s, 4s, 8s, 16s, then give up
  - send_unload_stop() fires a stop that nobody waits for

The server is authoritative: on any doubt the next server message wins.
"""
import asyncio
import atexit
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import httpx

logger = logging.getLogger(__name__)

PING_PATH = "/api/usage/ping"
STREAM_PATH = "/api/usage/stream"

CONNECTION_LOST = "Connection lost. Please refresh the page."
NEAR_LIMIT_S = 1800

_SNAPSHOT_EVENTS = {"session:created", "session:heartbeat", "usage:updated"}


class UsageClientError(Exception):
    """A ping or stream request was refused by the server."""


@dataclass(frozen=True)
class UsageSessionState:
    session_id: Optional[str] = None
    status: str = "idle"  # idle | starting | active | stopping | closed | expired | capped
    time_remaining_seconds: int = 0
    total_usage_seconds: int = 0
    current_session_seconds: int = 0
    started_at: Optional[str] = None
    expires_at: Optional[str] = None
    cap_at: Optional[str] = None
    is_connected: bool = False
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def time_remaining_minutes(self) -> int:
        return self.time_remaining_seconds // 60

    @property
    def total_usage_minutes(self) -> int:
        return self.total_usage_seconds // 60

    @property
    def has_reached_limit(self) -> bool:
        return self.time_remaining_seconds <= 0

    @property
    def is_near_limit(self) -> bool:
        return 0 < self.time_remaining_seconds <= NEAR_LIMIT_S

    @property
    def is_valid_for_recording(self) -> bool:
        """May START a new recording (false while one is running)."""
        return (
            not self.is_active
            and not self.has_reached_limit
            and self.status in ("idle", "closed", "expired")
        )

    @property
    def is_valid_for_translation(self) -> bool:
        return not self.has_reached_limit and self.status != "capped"


class UsageSessionClient:
    """Async client reconciling user actions with server-pushed session state."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        max_reconnect_attempts: int = 5,
        base_reconnect_delay_s: float = 1.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.http = http or httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(10.0, read=None))
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_reconnect_delay_s = base_reconnect_delay_s
        self._sleep = sleep

        self.state = UsageSessionState()
        self.reconnect_attempts = 0
        self._starting = False
        self._stopping = False
        self._closed = False
        self._listeners: List[Callable[[UsageSessionState], None]] = []
        self._background: Set[asyncio.Task] = set()

    # ── State ────────────────────────────────────────────────────

    def subscribe(self, listener: Callable[[UsageSessionState], None]) -> None:
        self._listeners.append(listener)

    def _set(self, state: UsageSessionState) -> None:
        self.state = state
        for listener in self._listeners:
            listener(state)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    # ── Actions ──────────────────────────────────────────────────

    async def start_session(self) -> None:
        if self._starting or self.state.is_active:
            logger.debug("Session already starting or active")
            return
        self._starting = True
        self._set(replace(self.state, status="starting", error=None))
        try:
            data = await self._ping(True)
            self._set(self._from_response(data))
            logger.info("Session started: session=%s", data.get("session_id"))
        except (httpx.HTTPError, UsageClientError) as e:
            logger.error("Error starting session: %s", e)
            self._set(replace(self.state, status="idle", error=str(e) or "Failed to start session"))
        finally:
            self._starting = False

    async def stop_session(self) -> None:
        if self._stopping or not self.state.is_active:
            logger.debug("Session already stopping or not active")
            return
        self._stopping = True
        self._set(replace(self.state, status="stopping", error=None))
        try:
            data = await self._ping(False)
            self._set(UsageSessionState(
                status="idle",
                time_remaining_seconds=data["time_remaining_seconds"],
                total_usage_seconds=data["total_usage_seconds"],
                is_connected=self.state.is_connected,
            ))
            logger.info("Session stopped, back to idle")
        except (httpx.HTTPError, UsageClientError) as e:
            # Still active server-side until closed or lapsed: keep it stoppable
            logger.error("Error stopping session: %s", e)
            self._set(replace(self.state, status="active", error=str(e) or "Failed to stop session"))
        finally:
            self._stopping = False

    async def _ping(self, active: bool) -> Dict[str, Any]:
        response = await self.http.post(PING_PATH, json={"active": active}, headers=self._headers())
        if response.status_code != 200:
            verb = "start" if active else "stop"
            raise UsageClientError(f"Failed to {verb} session: HTTP {response.status_code}")
        return response.json()

    def _from_response(self, data: Dict[str, Any]) -> UsageSessionState:
        return UsageSessionState(
            session_id=data.get("session_id"),
            status=data.get("status", "idle") if data.get("session_id") else "idle",
            time_remaining_seconds=data.get("time_remaining_seconds", 0),
            total_usage_seconds=data.get("total_usage_seconds", 0),
            current_session_seconds=data.get("current_session_seconds") or 0,
            started_at=data.get("started_at"),
            expires_at=data.get("expires_at"),
            cap_at=data.get("cap_at"),
            is_connected=self.state.is_connected,
        )

    # ── Push consumption ─────────────────────────────────────────

    def apply_event(self, event: Dict[str, Any]) -> None:
        """Adopt one server event. Data events replace state wholesale."""
        event_type = event.get("type")
        if event_type in _SNAPSHOT_EVENTS:
            self._set(UsageSessionState(
                session_id=event.get("sessionId"),
                status=event.get("status", "idle"),
                time_remaining_seconds=event.get("timeRemainingSeconds", 0),
                total_usage_seconds=event.get("totalUsageSeconds", 0),
                current_session_seconds=event.get("currentSessionSeconds", 0),
                started_at=event.get("startedAt"),
                expires_at=event.get("expiresAt"),
                cap_at=event.get("capAt"),
                is_connected=self.state.is_connected,
            ))
        elif event_type == "session:closed":
            self._set(UsageSessionState(
                status="closed",
                time_remaining_seconds=event.get("timeRemainingSeconds", 0),
                total_usage_seconds=event.get("totalUsageSeconds", 0),
                is_connected=self.state.is_connected,
            ))
        elif event_type == "session:warning":
            self._set(replace(self.state, time_remaining_seconds=event.get("timeRemainingSeconds", 0)))
        else:
            return
        self.reconnect_attempts = 0

    async def run_stream(self) -> None:
        """Consume the stream until closed, reconnecting with exponential backoff."""
        while not self._closed:
            try:
                async with self.http.stream("GET", STREAM_PATH, headers=self._headers()) as response:
                    if response.status_code != 200:
                        raise UsageClientError(f"Stream refused: HTTP {response.status_code}")
                    self.reconnect_attempts = 0
                    self._set(replace(self.state, is_connected=True, error=None))
                    logger.info("Usage stream connected")
                    async for event in iter_sse_events(response.aiter_lines()):
                        self.apply_event(event)
            except (httpx.HTTPError, UsageClientError) as e:
                logger.warning("Usage stream error: %s", e)

            self._set(replace(self.state, is_connected=False))
            if self._closed:
                return
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error("Max reconnection attempts reached")
                self._set(replace(self.state, error=CONNECTION_LOST))
                return
            self.reconnect_attempts += 1
            delay = self.base_reconnect_delay_s * 2 ** (self.reconnect_attempts - 1)
            logger.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay, self.reconnect_attempts, self.max_reconnect_attempts,
            )
            await self._sleep(delay)

    # ── Teardown ─────────────────────────────────────────────────

    def send_unload_stop(self) -> Optional[asyncio.Task]:
        """Fire-and-forget stop for an active session. The response is never processed."""
        if not self.state.is_active or self._stopping:
            return None
        task = asyncio.get_running_loop().create_task(self._unload_ping())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _unload_ping(self) -> None:
        try:
            await self.http.post(PING_PATH, json={"active": False}, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Unload stop not delivered: %s", e)

    def install_unload_hook(self) -> None:
        """Best-effort stop at interpreter exit, when no event loop is left to use."""
        atexit.register(self._unload_sync)

    def _unload_sync(self) -> None:
        if not self.state.is_active or self._stopping:
            return
        try:
            httpx.post(
                f"{self.base_url}{PING_PATH}",
                json={"active": False},
                headers=self._headers(),
                timeout=2.0,
            )
        except httpx.HTTPError as e:
            logger.warning("Unload stop not delivered: %s", e)

    async def aclose(self) -> None:
        self._closed = True
        self.send_unload_stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.http.aclose()


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    """Parse text/event-stream lines into JSON payloads.

    Comment lines (keep-alives) are skipped; malformed payloads are logged
    and dropped.
    """
    data: List[str] = []
    async for line in lines:
        if line.startswith(":"):
            continue
        if line == "":
            if data:
                raw = "\n".join(data)
                data = []
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    logger.error("Error parsing stream event: %r", raw[:200])
            continue
        if line.startswith("data:"):
            data.append(line[5:].lstrip(" "))
