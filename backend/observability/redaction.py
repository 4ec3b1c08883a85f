"""Secret / PII scrubbing for log output.

Every formatter in core.logging_config passes its final line through
redact(). Rules run in order, so the more specific token shapes (bearer
headers, auth cookies, JWTs) are replaced before the generic key=value rule.
"""
import re
from typing import Any, FrozenSet, List, NamedTuple, Optional


class _Rule(NamedTuple):
    label: str
    pattern: re.Pattern


_RULES: List[_Rule] = [
    _Rule("[REDACTED_BEARER]", re.compile(r"Bearer\s+[A-Za-z0-9_\-\.]+", re.IGNORECASE)),
    _Rule("[REDACTED_COOKIE]", re.compile(r"sb-[A-Za-z0-9-]*-?(?:access|refresh)-token=[^;\s]+")),
    _Rule("[REDACTED_JWT]", re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")),
    _Rule("[REDACTED_MONGO_URI]", re.compile(r"mongodb(?:\+srv)?://\S+")),
    _Rule("[REDACTED_BILLING_KEY]", re.compile(r"\b(?:sk|rk|whsec)_(?:live|test)?_?[A-Za-z0-9]{10,}\b")),
    _Rule("[REDACTED_EMAIL]", re.compile(r"[\w.+-]+@[A-Za-z0-9-]+\.[A-Za-z0-9.-]+")),
    _Rule(
        "[REDACTED_SECRET]",
        re.compile(r"(?:api[_-]?key|secret|password|token)[\s:=]+[\"']?[\w\-\.]{20,}[\"']?", re.IGNORECASE),
    ),
]

SENSITIVE_KEYS: FrozenSet[str] = frozenset({
    "token", "access_token", "refresh_token", "jwt",
    "password", "secret", "api_key",
    "authorization", "cookie",
})


def redact(text: str) -> str:
    """Replace every secret-shaped substring of text with its label."""
    for rule in _RULES:
        text = rule.pattern.sub(rule.label, text)
    return text


def _redact_value(value: Any, keys: FrozenSet[str]) -> Any:
    if isinstance(value, dict):
        return redact_dict(value, keys)
    if isinstance(value, list):
        return [_redact_value(v, keys) for v in value]
    if isinstance(value, str):
        return redact(value)
    return value


def redact_dict(data: dict, sensitive_keys: Optional[FrozenSet[str]] = None) -> dict:
    """Copy of data safe to log: sensitive keys masked, string values scrubbed."""
    keys = SENSITIVE_KEYS if sensitive_keys is None else sensitive_keys
    return {
        k: "[REDACTED]" if str(k).lower() in keys else _redact_value(v, keys)
        for k, v in data.items()
    }
