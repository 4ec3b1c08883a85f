"""Usage-session schemas — stored rows, snapshots, ping and stream payloads."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from pydantic import BaseModel, Field, StrictBool


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    EXPIRED = "expired"
    CAPPED = "capped"


# Terminal status -> session:closed reason
CLOSE_REASONS = {
    SessionStatus.CLOSED.value: "user",
    SessionStatus.EXPIRED.value: "expired",
    SessionStatus.CAPPED.value: "capped",
}


class StreamEventType(str, Enum):
    SESSION_CREATED = "session:created"
    SESSION_HEARTBEAT = "session:heartbeat"
    SESSION_CLOSED = "session:closed"
    SESSION_WARNING = "session:warning"
    USAGE_UPDATED = "usage:updated"


def iso(dt: Optional[datetime]) -> Optional[str]:
    """UTC ISO-8601 with milliseconds and a Z suffix (browser Date format)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class UsageSession(BaseModel):
    """One contiguous interval of metered activity (usage_sessions row)."""
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime
    last_seen_at: datetime
    max_end_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    def to_doc(self) -> dict:
        d = self.model_dump()
        d["status"] = self.status.value
        return d

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "UsageSession":
        data = {k: v for k, v in doc.items() if k != "_id"}
        for key in ("started_at", "last_seen_at", "max_end_at", "ended_at", "created_at", "updated_at"):
            value = data.get(key)
            if isinstance(value, datetime) and value.tzinfo is None:
                data[key] = value.replace(tzinfo=timezone.utc)
        return cls(**data)


class SessionSnapshot(BaseModel):
    """Point-in-time view of a user's usage, computed fresh per request."""
    session_id: Optional[str] = None
    status: str = "idle"  # SessionStatus value, or "idle" when nothing is active
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    cap_at: Optional[datetime] = None
    time_remaining_seconds: int = 0
    total_usage_seconds: int = 0  # closed sessions + current
    current_session_seconds: int = 0
    closed_usage_seconds: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE.value and self.session_id is not None

    def to_response(self) -> Dict[str, Any]:
        """Ping endpoint body."""
        body: Dict[str, Any] = {
            "status": self.status,
            "time_remaining_seconds": self.time_remaining_seconds,
            "total_usage_seconds": self.total_usage_seconds,
            "current_session_seconds": self.current_session_seconds,
            "totals": {"total_seconds": self.closed_usage_seconds},
        }
        if self.session_id is not None:
            body.update({
                "session_id": self.session_id,
                "started_at": iso(self.started_at),
                "expires_at": iso(self.expires_at),
                "cap_at": iso(self.cap_at),
            })
        return body

    def to_event(self, event_type: Optional[StreamEventType] = None) -> Dict[str, Any]:
        """Stream frame body (camelCase, as consumed by the web client)."""
        if event_type is None:
            event_type = (
                StreamEventType.SESSION_HEARTBEAT if self.is_active
                else StreamEventType.USAGE_UPDATED
            )
        return {
            "type": event_type.value,
            "sessionId": self.session_id,
            "status": self.status,
            "startedAt": iso(self.started_at),
            "expiresAt": iso(self.expires_at),
            "capAt": iso(self.cap_at),
            "timeRemainingSeconds": self.time_remaining_seconds,
            "totalUsageSeconds": self.total_usage_seconds,
            "currentSessionSeconds": self.current_session_seconds,
        }


class PingRequest(BaseModel):
    active: StrictBool


class ChangeEvent(BaseModel):
    """One change-feed notification scoped to a user's sessions."""
    operation: str  # insert | update | replace | delete | poll
    session_id: Optional[str] = None
    status: Optional[str] = None
    ended_at: Optional[datetime] = None
