"""Startup configuration validation guardrails."""

import logging


logger = logging.getLogger(__name__)


def _require_jwt_secret(settings) -> None:
    """Fail closed if JWT secret is not explicitly configured."""
    if not settings.JWT_SECRET or not settings.JWT_SECRET.strip():
        raise RuntimeError(
            "STARTUP FAILED — JWT_SECRET is required and cannot be empty. "
            "Set JWT_SECRET in backend/.env or container environment and restart the server."
        )


def validate_startup_config(settings) -> None:
    """Centralized startup guardrails for required and warning-level config."""
    _require_jwt_secret(settings)

    required_vars = {
        "MONGO_URL": settings.MONGO_URL,
        "DB_NAME": settings.DB_NAME,
    }
    missing = [k for k, v in required_vars.items() if not v]
    if missing:
        raise RuntimeError(
            f"STARTUP FAILED — missing required env vars: {', '.join(missing)}\n"
            "Set them in .env or container environment and restart the server."
        )

    positive_vars = {
        "USAGE_TTL_S": settings.USAGE_TTL_S,
        "DEFAULT_SESSION_LIMIT_MINUTES": settings.DEFAULT_SESSION_LIMIT_MINUTES,
        "STREAM_REFRESH_INTERVAL_S": settings.STREAM_REFRESH_INTERVAL_S,
        "STREAM_KEEPALIVE_INTERVAL_S": settings.STREAM_KEEPALIVE_INTERVAL_S,
        "STREAM_POLL_INTERVAL_S": settings.STREAM_POLL_INTERVAL_S,
    }
    non_positive = [k for k, v in positive_vars.items() if v <= 0]
    if non_positive:
        raise RuntimeError(
            f"STARTUP FAILED — must be positive: {', '.join(non_positive)}"
        )

    if settings.ENV == "prod":
        if "localhost" in settings.MONGO_URL or "127.0.0.1" in settings.MONGO_URL:
            raise RuntimeError(
                "STARTUP FAILED — MONGO_URL points at localhost in production."
            )
        if settings.STREAM_CHANGE_FEED == "poll":
            logger.warning(
                "CONFIG WARNING: STREAM_CHANGE_FEED=poll in prod — "
                "usage stream will poll Mongo every %.1fs per connection",
                settings.STREAM_POLL_INTERVAL_S,
            )
