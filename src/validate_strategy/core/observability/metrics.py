"""Metrics collection for observability.

Metrics are emitted as structured log records (``METRIC: <prefix>.<name>``)
for log-based aggregation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics that can be emitted."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMER = "timer"


@dataclass
class Metric:
    """Structured metric data."""

    name: str
    value: Union[int, float]
    metric_type: MetricType
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "value": self.value,
            "type": self.metric_type.value,
            "labels": self.labels,
            "timestamp": self.timestamp,
        }


class MetricsCollector:
    """Collects and emits metrics to the standard logger."""

    def __init__(self, prefix: str = "validate_strategy"):
        self.prefix = prefix
        self._logger = logging.getLogger(f"{__name__}.metrics")

    def emit(self, metric: Metric) -> None:
        """Emit a metric to the structured logger."""
        self._logger.info(f"METRIC: {self.prefix}.{metric.name}", extra={"metric": metric.to_dict()})

    def counter(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None) -> None:
        """Emit a counter metric."""
        self.emit(Metric(name=name, value=value, metric_type=MetricType.COUNTER, labels=labels or {}))

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Emit a gauge metric."""
        self.emit(Metric(name=name, value=value, metric_type=MetricType.GAUGE, labels=labels or {}))

    def timer(self, name: str, duration_ms: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Emit a timer metric (duration in milliseconds)."""
        self.emit(Metric(name=name, value=duration_ms, metric_type=MetricType.TIMER, labels=labels or {}))

    def histogram(
        self,
        name: str,
        value: Union[int, float],
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Emit a histogram metric for distribution tracking."""
        self.emit(Metric(name=name, value=value, metric_type=MetricType.HISTOGRAM, labels=labels or {}))

    def analysis_event(self, session_id: str, tier: str, outcome: str, duration_ms: float) -> None:
        """Record an analysis lifecycle outcome (part_complete, success, retry, failure, partial_success)."""
        labels = {"tier": tier, "outcome": outcome, "session_id": session_id}
        self.counter(f"analysis.{outcome}", labels=labels)
        self.timer("analysis.duration_ms", duration_ms, labels=labels)


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics
