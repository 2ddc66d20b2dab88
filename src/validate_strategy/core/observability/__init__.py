"""Observability utilities: audit logging, metrics and best-effort tasks."""

from validate_strategy.core.observability.audit import (
    AuditEvent,
    AuditEventType,
    AuditLogger,
    audit_log,
    get_audit_logger,
)
from validate_strategy.core.observability.best_effort import (
    drain_pending,
    fire_and_forget,
)
from validate_strategy.core.observability.metrics import (
    Metric,
    MetricsCollector,
    MetricType,
    get_metrics,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "audit_log",
    "get_audit_logger",
    "drain_pending",
    "fire_and_forget",
    "Metric",
    "MetricsCollector",
    "MetricType",
    "get_metrics",
]
