"""LiveCaption Backend — usage metering entry point.

Serves the usage-session API (ping, live stream, session data) consumed by
the captioning dashboard. Auth and billing are external providers; this
service only reads their facts.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
import logging
import time

from dotenv import load_dotenv
from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.cors import CORSMiddleware

# Load env before anything else
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

from config.settings import get_settings
from config.validators import validate_startup_config
from core.logging_config import setup_logging
from core.database import init_indexes, close_db
from core.exceptions import (
    AccountLockedError,
    AuthError,
    InvalidRequestError,
    LiveCaptionError,
    RateLimitedError,
)
from abuse.lockout import get_lockout_stats
from abuse.rate_limit import get_rate_limit_stats
from api.usage import router as usage_router

VERSION = "1.0.0"

# ---- Setup logging ----
setup_logging()
logger = logging.getLogger(__name__)

_STARTED = time.monotonic()


# ---- Lifespan ----
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("LiveCaption BE starting — env=%s", settings.ENV)
    validate_startup_config(settings)
    await init_indexes()
    logger.info("LiveCaption BE ready")
    yield
    await close_db()
    logger.info("LiveCaption BE shutdown complete")


# ---- App ----
app = FastAPI(
    title="LiveCaption Usage API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[o.strip() for o in get_settings().CORS_ORIGINS.split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)


# =====================================================
#  Error mapping
# =====================================================

_STATUS_BY_ERROR = [
    (AuthError, 401),
    (InvalidRequestError, 400),
    (RateLimitedError, 429),
    (AccountLockedError, 429),
]


@app.exception_handler(LiveCaptionError)
async def livecaption_error_handler(request: Request, exc: LiveCaptionError):
    status_code = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break

    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        headers["Retry-After"] = str(retry_after)

    if status_code >= 500:
        logger.error("Request failed: path=%s code=%s error=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.message, "code": exc.code},
        headers=headers,
    )


api_router = APIRouter(prefix="/api")


# ---- Health ----
@api_router.get("/health")
async def health():
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_s": round(time.monotonic() - _STARTED, 1),
        "env": settings.ENV,
        "version": VERSION,
        "guards": {
            "rate_limits": get_rate_limit_stats(),
            "lockouts": get_lockout_stats(),
        },
    }


@api_router.head("/health")
async def liveness():
    return Response(status_code=200)


api_router.include_router(usage_router)

# Include REST router
app.include_router(api_router)
