"""Security event logging and suspicious input detection."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import logging
import re
from typing import Any, Mapping

from .config import settings

logger = logging.getLogger("muma.security")


class SecurityEventType(str, Enum):
    RATE_LIMIT_CHECK = "rate_limit_check"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RATE_LIMIT_ERROR = "rate_limit_error"
    BOT_DETECTED = "bot_detected"
    VALIDATION_FAILED = "validation_failed"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    XSS_ATTEMPT = "xss_attempt"


_SUSPICIOUS_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"onerror=", re.IGNORECASE),
    re.compile(r"onload=", re.IGNORECASE),
    re.compile(r"<iframe", re.IGNORECASE),
    re.compile(r"eval\(", re.IGNORECASE),
    re.compile(r"alert\(", re.IGNORECASE),
)


def _build_entry(event: str, data: Mapping[str, Any] | None) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "environment": settings.env,
    }
    if data is None:
        return entry
    try:
        extra = dict(data)
    except (TypeError, ValueError):
        entry["payload"] = repr(data)
        return entry
    for key, value in extra.items():
        entry.setdefault(str(key), value)
    return entry


def log_security_event(event: SecurityEventType | str, data: Mapping[str, Any] | None = None) -> None:
    """Emit a structured security event.

    The entry always carries a UTC timestamp and the environment tag. This is
    called from request paths that must not fail, so nothing here raises:
    payloads that cannot be turned into a dict are logged by ``repr``.
    """

    event_name = event.value if isinstance(event, SecurityEventType) else str(event)
    entry = _build_entry(event_name, data)
    logger.warning(
        "[SECURITY] %s",
        event_name,
        extra={"event": event_name, "environment": entry["environment"], "security": entry},
    )


def detect_suspicious_pattern(text: str) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for pattern in _SUSPICIOUS_PATTERNS)


def log_xss_attempt(field: str, value: str, context: str) -> None:
    log_security_event(
        SecurityEventType.XSS_ATTEMPT,
        {
            "field": field,
            "value": value[:100],
            "context": context,
            "severity": "high",
        },
    )
