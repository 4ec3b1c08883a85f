"""Session Store — the narrow persistence contract behind the usage engine.

The engine only ever talks to a SessionStore. Concurrency control is the
store's job, through two primitives:
  - a unique constraint on user_id among rows with status == "active"
    (insert_active raises DuplicateActiveSessionError on conflict)
  - status-guarded writes (update_where matches id AND expected status)

MongoSessionStore backs this with motor; tests use an in-memory double.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional, Protocol

from pymongo.errors import DuplicateKeyError, PyMongoError

from config.settings import get_settings
from core.database import get_db
from core.exceptions import DuplicateActiveSessionError, StoreError
from schemas.usage import ChangeEvent, SessionStatus

logger = logging.getLogger(__name__)

SESSIONS = "usage_sessions"
USERS = "users"


class SessionStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def find_active(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def insert_active(self, doc: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update_where(
        self,
        session_id: str,
        expected_status: str,
        patch: Dict[str, Any],
    ) -> bool: ...

    async def sum_closed_durations(self, user_id: str) -> int: ...

    def subscribe(self, user_id: str) -> AsyncIterator[ChangeEvent]: ...


class MongoSessionStore:
    """SessionStore over the usage_sessions / users collections."""

    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db if self._db is not None else get_db()

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.db[USERS].find_one({"user_id": user_id}, {"_id": 0})
        except PyMongoError as e:
            raise StoreError(f"User lookup failed: {e}") from e

    async def find_active(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.db[SESSIONS].find_one(
                {"user_id": user_id, "status": SessionStatus.ACTIVE.value},
                {"_id": 0},
            )
        except PyMongoError as e:
            raise StoreError(f"Active session lookup failed: {e}") from e

    async def insert_active(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(doc)
        try:
            await self.db[SESSIONS].insert_one(row)
        except DuplicateKeyError as e:
            raise DuplicateActiveSessionError() from e
        except PyMongoError as e:
            raise StoreError(f"Session insert failed: {e}") from e
        row.pop("_id", None)
        return row

    async def update_where(
        self,
        session_id: str,
        expected_status: str,
        patch: Dict[str, Any],
    ) -> bool:
        try:
            result = await self.db[SESSIONS].update_one(
                {"session_id": session_id, "status": expected_status},  # optimistic lock
                {"$set": patch},
            )
        except PyMongoError as e:
            raise StoreError(f"Session update failed: {e}") from e
        return result.matched_count > 0

    async def sum_closed_durations(self, user_id: str) -> int:
        pipeline = [
            {"$match": {"user_id": user_id, "duration_seconds": {"$ne": None}}},
            {"$group": {"_id": None, "total": {"$sum": "$duration_seconds"}}},
        ]
        try:
            rows = await self.db[SESSIONS].aggregate(pipeline).to_list(1)
        except PyMongoError as e:
            raise StoreError(f"Usage aggregation failed: {e}") from e
        return int(rows[0]["total"]) if rows else 0

    def subscribe(self, user_id: str) -> AsyncIterator[ChangeEvent]:
        """Change notifications for one user's sessions.

        Uses a change stream when available (replica set), otherwise polls the
        user's newest updated_at. Close the iterator to unsubscribe.
        """
        if get_settings().STREAM_CHANGE_FEED == "change_stream":
            return self._watch(user_id)
        return self._poll(user_id)

    async def _watch(self, user_id: str) -> AsyncIterator[ChangeEvent]:
        pipeline = [{"$match": {"fullDocument.user_id": user_id}}]
        try:
            async with self.db[SESSIONS].watch(pipeline, full_document="updateLookup") as stream:
                logger.info("Change stream open: user=%s", user_id)
                async for change in stream:
                    doc = change.get("fullDocument") or {}
                    yield ChangeEvent(
                        operation=change.get("operationType", "update"),
                        session_id=doc.get("session_id"),
                        status=doc.get("status"),
                        ended_at=doc.get("ended_at"),
                    )
        except PyMongoError as e:
            raise StoreError(f"Change stream failed: {e}") from e

    async def _poll(self, user_id: str) -> AsyncIterator[ChangeEvent]:
        interval = get_settings().STREAM_POLL_INTERVAL_S
        marker = None
        first = True
        while True:
            try:
                doc = await self.db[SESSIONS].find_one(
                    {"user_id": user_id},
                    {"_id": 0, "session_id": 1, "status": 1, "ended_at": 1,
                     "updated_at": 1, "created_at": 1},
                    sort=[("updated_at", -1)],
                )
            except PyMongoError as e:
                logger.warning("Change poll failed: user=%s error=%s", user_id, str(e))
                doc = None
            if doc is not None:
                current = (doc.get("session_id"), doc.get("updated_at"))
                if not first and current != marker:
                    yield ChangeEvent(
                        operation="insert" if doc.get("created_at") == doc.get("updated_at") else "update",
                        session_id=doc.get("session_id"),
                        status=doc.get("status"),
                        ended_at=doc.get("ended_at"),
                    )
                marker = current
            first = False
            await asyncio.sleep(interval)


_store: Optional[MongoSessionStore] = None


def get_session_store() -> MongoSessionStore:
    global _store
    if _store is None:
        _store = MongoSessionStore()
    return _store
