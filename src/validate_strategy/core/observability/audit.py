"""Audit logging for operator-visible events.

Audit entries are written to a dedicated logger so they can be routed and
retained separately from application logs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Well-known audit event types."""

    ADMIN_ACTION = "admin_action"
    ANALYSIS_QUEUED = "analysis_queued"
    ANALYSIS_FAILED = "analysis_failed"
    OWNER_ALERT = "owner_alert"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    RETRY_EXHAUSTED = "retry_exhausted"
    REPORT_EMAILED = "report_emailed"


@dataclass
class AuditEvent:
    """Structured audit event."""

    event_type: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    actor_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "details": self.details,
        }
        if self.actor_id:
            result["actor_id"] = self.actor_id
        return result


class AuditLogger:
    """Structured audit logging."""

    def __init__(self):
        self._logger = logging.getLogger(f"{__name__}.audit")

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        self._logger.info(f"AUDIT: {event.event_type}", extra={"audit": event.to_dict()})

    def admin_action(self, action: str, actor_id: str, **details: Any) -> None:
        """Log an administrative action performed by ``actor_id``."""
        self.log(
            AuditEvent(
                event_type=AuditEventType.ADMIN_ACTION.value,
                actor_id=actor_id,
                details={"action": action, **details},
            )
        )


_audit_logger = AuditLogger()


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger."""
    return _audit_logger


def audit_log(event_type: str, **details: Any) -> None:
    """Convenience function for one-off audit entries.

    Args:
        event_type: Event type (an AuditEventType value or a dotted custom name)
        **details: Event-specific details
    """
    _audit_logger.log(AuditEvent(event_type=event_type, details=details))
