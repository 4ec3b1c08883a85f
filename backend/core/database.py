"""MongoDB async connection manager.

Provides singleton client and database references.
Creates indexes on startup for users and usage sessions.
"""
import logging
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from config.settings import get_settings

logger = logging.getLogger(__name__)

_client: AsyncIOMotorClient | None = None
_db: AsyncIOMotorDatabase | None = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = AsyncIOMotorClient(settings.MONGO_URL, tz_aware=True)
    return _client


def get_db() -> AsyncIOMotorDatabase:
    global _db
    if _db is None:
        settings = get_settings()
        _db = get_client()[settings.DB_NAME]
    return _db


async def init_indexes() -> None:
    """Create required indexes. Idempotent."""
    db = get_db()

    # Users: owned by the auth provider, mirrored here for billing facts
    await db.users.create_index("user_id", unique=True)

    # Usage sessions: at most one active row per user, enforced by the store
    await db.usage_sessions.create_index("session_id", unique=True)
    await db.usage_sessions.create_index(
        "user_id",
        unique=True,
        name="one_active_session_per_user",
        partialFilterExpression={"status": "active"},
    )
    await db.usage_sessions.create_index([("user_id", 1), ("updated_at", -1)])
    await db.usage_sessions.create_index([("user_id", 1), ("status", 1)])

    logger.info("MongoDB indexes initialized")


async def close_db() -> None:
    global _client, _db
    if _client:
        _client.close()
        _client = None
        _db = None
        logger.info("MongoDB connection closed")
