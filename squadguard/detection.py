"""Detection of SQL-injection and XSS attempts in request payloads.

Detectors only report. When they are given a tracker, an ip and an endpoint,
every hit is also recorded as a security event for that ip, so repeated attempts
escalate through the tracker's thresholds like any other event.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Optional

from .security_events import EventKind, SecurityEventTracker, safe_record_event

logger = logging.getLogger("squadguard.detection")

SQL_INJECTION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"('\s*(or|and)\s*')",
        r"(--\s*$)",
        r"(;\s*(drop|delete|update|insert|create|alter)\s+)",
        r"(union\s+select)",
        r"(or\s+1\s*=\s*1)",
        r"(and\s+1\s*=\s*1)",
        r"(drop\s+table\s+\w+)",
        r"(insert\s+into\s+\w+)",
        r"(update\s+\w+\s+set)",
        r"(delete\s+from\s+\w+)",
        r"('\s*;\s*drop\s+table)",
        r"('\s*union\s+select)",
    )
]

XSS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"<script[^>]*>.*?</script>",
        r"<iframe[^>]*src\s*=",
        r"<object[^>]*data\s*=",
        r"<embed[^>]*src\s*=",
        r"<link[^>]*href\s*=\s*[\"']javascript:",
        r"javascript:\s*[^\s]",
        r"vbscript:\s*[^\s]",
        r"on(load|error|click|mouseover)\s*=\s*[\"'][^\"']*[\"']",
        r"<img[^>]*onerror\s*=",
        r"<svg[^>]*onload\s*=",
        r"<[^>]*\s+on\w+\s*=\s*[\"'][^\"']*alert\s*\(",
    )
]

MAX_SANITIZED_LENGTH = 1000
PAYLOAD_EXCERPT_LENGTH = 100
MAX_NESTING_DEPTH = 32

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_HTML_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#x27;"),
)


def sanitize_string(value: Any) -> str:
    if not isinstance(value, str):
        return str(value)

    for raw, escaped in _HTML_ESCAPES:
        value = value.replace(raw, escaped)
    value = _CONTROL_CHARS_RE.sub("", value)
    return value.strip()[:MAX_SANITIZED_LENGTH]


def _report(
    kind: EventKind,
    value: str,
    tracker: Optional[SecurityEventTracker],
    ip: Optional[str],
    endpoint: Optional[str],
    user_agent: Optional[str],
) -> None:
    if tracker is None or not ip or not endpoint:
        return

    excerpt = value[:PAYLOAD_EXCERPT_LENGTH]
    logger.warning(
        "Suspicious payload detected",
        extra={"event": "payload_detection", "kind": kind.value, "ip": ip, "path": endpoint},
    )
    safe_record_event(
        tracker,
        kind,
        ip,
        {"endpoint": endpoint, "user_agent": user_agent, "payload": excerpt},
    )


def detect_sql_injection(
    value: Any,
    *,
    tracker: Optional[SecurityEventTracker] = None,
    ip: Optional[str] = None,
    endpoint: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> bool:
    if not isinstance(value, str):
        return False

    normalized = value.lower().strip()
    detected = any(pattern.search(normalized) for pattern in SQL_INJECTION_PATTERNS)
    if detected:
        _report(EventKind.SQL_INJECTION, value, tracker, ip, endpoint, user_agent)
    return detected


def detect_xss(
    value: Any,
    *,
    tracker: Optional[SecurityEventTracker] = None,
    ip: Optional[str] = None,
    endpoint: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> bool:
    if not isinstance(value, str):
        return False

    detected = any(pattern.search(value) for pattern in XSS_PATTERNS)
    if detected:
        _report(EventKind.XSS, value, tracker, ip, endpoint, user_agent)
    return detected


class PayloadTooDeep(ValueError):
    """Raised when a decoded document nests deeper than the allowed depth."""

    def __init__(self, max_depth: int) -> None:
        super().__init__(f"payload nesting exceeds {max_depth} levels")
        self.max_depth = max_depth


def sanitize_object(
    value: Any,
    *,
    tracker: Optional[SecurityEventTracker] = None,
    ip: Optional[str] = None,
    endpoint: Optional[str] = None,
    user_agent: Optional[str] = None,
    max_depth: int = MAX_NESTING_DEPTH,
) -> Any:
    """Scan and sanitize a decoded JSON document, keys included.

    Containers nested deeper than ``max_depth`` raise ``PayloadTooDeep``.
    """
    options = {"tracker": tracker, "ip": ip, "endpoint": endpoint, "user_agent": user_agent}
    return _sanitize(value, options, 0, max_depth)


def _sanitize(value: Any, options: dict[str, Any], depth: int, max_depth: int) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        detect_sql_injection(value, **options)
        detect_xss(value, **options)
        return sanitize_string(value)

    if isinstance(value, (list, tuple, dict)) and depth >= max_depth:
        raise PayloadTooDeep(max_depth)

    if isinstance(value, (list, tuple)):
        return [_sanitize(item, options, depth + 1, max_depth) for item in value]

    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for key, item in value.items():
            raw_key = str(key)
            detect_sql_injection(raw_key, **options)
            detect_xss(raw_key, **options)
            sanitized[sanitize_string(raw_key)] = _sanitize(item, options, depth + 1, max_depth)
        return sanitized

    return value
