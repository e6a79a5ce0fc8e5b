from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol

from sessionward.logging import get_logger
from sessionward.storage.models import utcnow

logger = get_logger(__name__)

LOGIN_ATTEMPT = "login_attempt"
LOGIN_SUCCESS = "login_success"
LOGIN_FAILED = "login_failed"
REFRESH_SUCCESS = "refresh_success"
REFRESH_FAILED = "refresh_failed"
REFRESH_TOKEN_ROTATED = "refresh_token_rotated"
SUSPICIOUS_ACTIVITY = "suspicious_activity"
LOGOUT = "logout"
SESSION_CLOSED = "session_closed"
SESSIONS_REVOKED = "sessions_revoked"
TOKEN_REJECTED = "token_rejected"
PASSWORD_CHANGED = "password_changed"
PASSWORD_CHANGE_FAILED = "password_change_failed"


class SecurityAuditSink(Protocol):
    def record(self, event: str, attributes: Dict[str, Any]) -> None: ...


class StructlogAuditSink:
    """Writes security events to the ``sessionward.audit`` log stream."""

    def __init__(self) -> None:
        self.logger = get_logger("sessionward.audit")

    def record(self, event: str, attributes: Dict[str, Any]) -> None:
        if event == SUSPICIOUS_ACTIVITY:
            self.logger.warning(event, audit=True, **attributes)
        else:
            self.logger.info(event, audit=True, **attributes)


@dataclass
class AuditEvent:
    event: str
    attributes: Dict[str, Any]
    recorded_at: datetime = field(default_factory=utcnow)


class RecordingAuditSink:
    """Keeps events in memory; used by tests and embedding hosts."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: str, attributes: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append(AuditEvent(event=event, attributes=dict(attributes)))

    def names(self) -> List[str]:
        with self._lock:
            return [item.event for item in self.events]

    def of(self, event: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [item.attributes for item in self.events if item.event == event]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


def emit(sink: SecurityAuditSink, event: str, **attributes: Any) -> None:
    """Record an audit event; a failing sink is logged and never propagates."""
    try:
        sink.record(event, attributes)
    except Exception as exc:
        logger.warning("audit_sink_failed", audit_event=event, error=str(exc))
