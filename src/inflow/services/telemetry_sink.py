from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from threading import RLock
from typing import Any, Dict, List, Optional

_logger = logging.getLogger("inflow.telemetry")

_EMAIL = re.compile(r"\b[\w.-]+@[\w.-]+\.\w{2,}\b", re.IGNORECASE)
_PHONE = re.compile(r"\b(\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
_SSN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")

RAW_OUTPUT_LIMIT = 10_000


def redact_pii(text: Optional[str]) -> Optional[str]:
    """Mask email addresses, phone numbers and SSNs before text reaches a log."""
    if not text:
        return text
    text = _EMAIL.sub("[EMAIL]", text)
    text = _PHONE.sub("[PHONE]", text)
    return _SSN.sub("[SSN]", text)


def redact_context(context: Dict[str, Any]) -> Dict[str, Any]:
    return {k: redact_pii(v) if isinstance(v, str) else v for k, v in context.items()}


@dataclass
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    actor: str | None = None


@dataclass
class AIRequestLog:
    """Audit row written once per chat request that reaches the model or cache."""

    request_id: str
    user_id: str
    prompt_version: str
    model: str
    message_count: int
    project_id: Optional[str] = None
    latency_ms: Optional[int] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    parsed_successfully: Optional[bool] = None
    parse_errors: Optional[List[str]] = None
    raw_output: Optional[str] = None
    cache_status: str = "MISS"


# Keep a rolling buffer of recent events and audit rows for diagnostics (best-effort only)
_RECENT_EVENTS: List[TelemetryEvent] = []
_RECENT_REQUESTS: List[AIRequestLog] = []
_MAX_BUFFER = 200
_lock = RLock()


def _trim(buffer: List[Any]) -> None:
    if len(buffer) > _MAX_BUFFER:
        del buffer[0 : len(buffer) - _MAX_BUFFER]


def record_event(event: TelemetryEvent) -> None:
    """Persist a telemetry event by logging and storing in an in-memory buffer."""

    with _lock:
        _RECENT_EVENTS.append(event)
        _trim(_RECENT_EVENTS)

    try:
        _logger.info(
            "telemetry_event",
            extra={
                "telemetry_name": event.name,
                "telemetry_actor": event.actor,
                "telemetry_properties": redact_context(event.properties),
            },
        )
    except Exception:
        # Logging failures should not surface to callers
        pass


def list_recent_events(limit: int = 50) -> List[TelemetryEvent]:
    if limit <= 0:
        return []
    with _lock:
        return list(_RECENT_EVENTS[-limit:])


def record_ai_request(entry: AIRequestLog) -> None:
    """Store an audit row; raw output is capped and redacted before it is kept."""

    if entry.raw_output is not None:
        entry.raw_output = redact_pii(entry.raw_output[:RAW_OUTPUT_LIMIT])
    if entry.parse_errors:
        entry.parse_errors = [redact_pii(e) or "" for e in entry.parse_errors]

    with _lock:
        _RECENT_REQUESTS.append(entry)
        _trim(_RECENT_REQUESTS)

    try:
        row = asdict(entry)
        row.pop("raw_output", None)
        _logger.info("ai_request_logged", extra={"ai_request": row})
    except Exception:
        pass


def list_recent_requests(limit: int = 50) -> List[AIRequestLog]:
    if limit <= 0:
        return []
    with _lock:
        return list(_RECENT_REQUESTS[-limit:])


def reset_telemetry() -> None:
    with _lock:
        _RECENT_EVENTS.clear()
        _RECENT_REQUESTS.clear()
