"""Process logging for the usage service.

  - ENV=prod → one JSON object per line, correlation ids lifted into fields
  - otherwise → plaintext for humans

Call sites log %-style with key=value tokens (user=, session=, req=).
Both formatters scrub their output through observability.redaction when
LOG_REDACTION_ENABLED is on.
"""
import json
import logging
import re
import sys
from typing import Dict, Optional

from config.settings import get_settings
from observability.redaction import redact

SERVICE = "livecaption-usage"

_CORRELATION = re.compile(r"\b(user|session|req)=([^\s,]+)")

_QUIET_LOGGERS = ("uvicorn.access", "motor", "pymongo", "httpx", "httpcore")

_PLAIN_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def correlation_fields(message: str) -> Dict[str, str]:
    """user=/session=/req= tokens as {user_id, session_id, req_id}; first one wins."""
    fields: Dict[str, str] = {}
    for key, value in _CORRELATION.findall(message):
        fields.setdefault(f"{key}_id", value)
    return fields


def _scrub(line: str) -> str:
    return redact(line) if get_settings().LOG_REDACTION_ENABLED else line


class RedactingFormatter(logging.Formatter):
    """Plaintext formatter with secret scrubbing."""

    def format(self, record: logging.LogRecord) -> str:
        return _scrub(super().format(record))


class JSONFormatter(logging.Formatter):
    """Line-delimited JSON for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        entry = {
            "ts": self.formatTime(record, _DATE_FORMAT),
            "level": record.levelname,
            "service": SERVICE,
            "logger": record.name,
            "msg": message,
            **correlation_fields(message),
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return _scrub(json.dumps(entry, default=str))


def build_formatter(env: str) -> logging.Formatter:
    if env == "prod":
        return JSONFormatter()
    return RedactingFormatter(fmt=_PLAIN_FORMAT, datefmt=_DATE_FORMAT)


def setup_logging(level: Optional[str] = None) -> None:
    """Route the root logger to stdout with the environment's formatter."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(settings.ENV))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
