"""Centralized settings module — single source of truth for all config.

All secrets loaded exclusively from env vars. Never committed, never logged.
Redaction enforced everywhere via observability.redaction.
"""
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # ── Environment ──────────────────────────────────────────────
    ENV: Literal["dev", "staging", "prod"] = Field(default="dev")
    CORS_ORIGINS: str = Field(default="*")  # comma-separated

    # ── MongoDB ──────────────────────────────────────────────────
    MONGO_URL: str = Field(default="mongodb://localhost:27017")
    DB_NAME: str = Field(default="livecaption_dev")

    # ── Auth (tokens issued by the external auth provider) ───────
    JWT_SECRET: str = Field(default="")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_AUDIENCE: str = Field(default="authenticated")
    AUTH_COOKIE_NAME: str = Field(default="sb-access-token")

    # ── Usage sessions ───────────────────────────────────────────
    USAGE_TTL_S: int = Field(default=180)  # heartbeat liveness window
    DEFAULT_SESSION_LIMIT_MINUTES: int = Field(default=180)
    NEAR_LIMIT_WARNING_S: int = Field(default=1800)

    # ── Usage stream (SSE) ───────────────────────────────────────
    STREAM_REFRESH_INTERVAL_S: float = Field(default=10.0)
    STREAM_KEEPALIVE_INTERVAL_S: float = Field(default=30.0)
    # change_stream needs a replica set; poll works on a standalone mongod
    STREAM_CHANGE_FEED: Literal["change_stream", "poll"] = Field(default="change_stream")
    STREAM_POLL_INTERVAL_S: float = Field(default=2.0)

    # ── Abuse guards (process-local, reset on restart) ───────────
    PING_RATE_LIMIT_MAX: int = Field(default=120)
    PING_RATE_LIMIT_WINDOW_S: int = Field(default=60)
    AUTH_LOCKOUT_MAX_ATTEMPTS: int = Field(default=5)
    AUTH_LOCKOUT_WINDOW_S: int = Field(default=900)
    AUTH_LOCKOUT_DURATION_S: int = Field(default=900)

    # ── Observability ────────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    LOG_REDACTION_ENABLED: bool = Field(default=True)

    model_config = {
        "env_file": str(_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
