"""Three-state circuit breaker for the shared LLM dependency.

State law:
    closed    -> open       when recent failures reach ``failure_threshold``
    open      -> half_open  on the first ``can_execute()`` after ``reset_timeout``
    half_open -> closed     on the trial call's success (failure count reset)
    half_open -> open       on the trial call's failure (cool-down restarts)
    half_open -> half_open  when the trial ends without an outcome (slot freed)

Half-open admits exactly one trial call; further callers are rejected until
the trial reports back.  Instances are independent so tests can build
isolated breakers; the process-wide LLM breaker is obtained through
:func:`get_llm_circuit_breaker`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from validate_strategy.core.observability import AuditEventType, audit_log

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker tuning (durations in seconds)."""

    failure_threshold: int = 5
    reset_timeout: float = 60.0
    failure_window: float = 120.0


def _to_datetime(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class CircuitBreaker:
    """Circuit breaker guarding calls to a single downstream dependency.

    Only failures the caller has classified as retryable should be passed
    to :meth:`record_failure`; fatal errors bypass circuit accounting.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_at: Optional[float] = None
        self.opened_at: Optional[float] = None
        self.half_open_at: Optional[float] = None
        self.reset_at: Optional[float] = None
        self._failure_timestamps: List[float] = []
        self._trial_in_flight = False

    def _prune_failures(self, now: float) -> None:
        cutoff = now - self.config.failure_window
        self._failure_timestamps = [ts for ts in self._failure_timestamps if ts > cutoff]

    def _open(self, now: float) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = now
        self.reset_at = now + self.config.reset_timeout
        self.half_open_at = None
        self._trial_in_flight = False
        audit_log(
            AuditEventType.CIRCUIT_OPENED.value,
            breaker=self.name,
            failures=self.failure_count,
            recent_failures=len(self._failure_timestamps),
            reset_at=_to_datetime(self.reset_at).isoformat(),
        )

    def can_execute(self) -> bool:
        """Check whether a call may proceed, advancing open -> half_open when due."""
        with self._lock:
            now = self._clock()
            self._prune_failures(now)

            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                if self.reset_at is not None and now >= self.reset_at:
                    self.state = CircuitState.HALF_OPEN
                    self.half_open_at = now
                    self.success_count = 0
                    self._trial_in_flight = True
                    logger.info("Circuit breaker %s transitioning to HALF_OPEN", self.name)
                    return True
                return False

            # HALF_OPEN: exactly one trial call
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self._failure_timestamps = []
                self.opened_at = None
                self.reset_at = None
                self.half_open_at = None
                self._trial_in_flight = False
                logger.info("Circuit breaker %s CLOSED after successful trial", self.name)
                audit_log(AuditEventType.CIRCUIT_CLOSED.value, breaker=self.name)
            elif self.state == CircuitState.CLOSED:
                self.failure_count = max(0, self.failure_count - 1)
                if self._failure_timestamps:
                    self._failure_timestamps.pop(0)

    def record_failure(self) -> None:
        """Record a retryable failure."""
        with self._lock:
            now = self._clock()
            self._failure_timestamps.append(now)
            self.last_failure_at = now
            self.failure_count += 1

            if self.state == CircuitState.HALF_OPEN:
                self._open(now)
                logger.warning("Circuit breaker %s re-OPENED from HALF_OPEN", self.name)
            elif self.state == CircuitState.CLOSED:
                self._prune_failures(now)
                if len(self._failure_timestamps) >= self.config.failure_threshold:
                    self._open(now)
                    logger.warning(
                        "Circuit breaker %s OPENED after %d failures",
                        self.name,
                        self.failure_count,
                    )

    def release_trial(self) -> None:
        """Free the half-open trial slot after a call that reported no outcome.

        Fatal errors and cancellations say nothing about the dependency, so
        the breaker stays half-open and admits the next caller as the trial.
        """
        with self._lock:
            if self.state == CircuitState.HALF_OPEN and self._trial_in_flight:
                self._trial_in_flight = False
                logger.info("Circuit breaker %s trial released without an outcome", self.name)

    def is_call_permitted(self) -> bool:
        """Whether ``can_execute()`` would admit a call, without claiming the trial slot."""
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.OPEN:
                return self.reset_at is not None and self._clock() >= self.reset_at
            return not self._trial_in_flight

    def get_state(self) -> CircuitState:
        return self.state

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def get_reset_time(self) -> Optional[datetime]:
        """When an open circuit becomes eligible for a trial call."""
        if self.state == CircuitState.OPEN:
            return _to_datetime(self.reset_at)
        return None

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot for admin visibility."""
        with self._lock:
            self._prune_failures(self._clock())
            reset_time = self.get_reset_time()
            return {
                "name": self.name,
                "state": self.state.value,
                "failures": self.failure_count,
                "recent_failures": len(self._failure_timestamps),
                "reset_time": reset_time.isoformat() if reset_time else None,
                "last_failure_at": (
                    _to_datetime(self.last_failure_at).isoformat() if self.last_failure_at else None
                ),
            }

    def force_reset(self) -> None:
        """Force the circuit closed (admin action)."""
        with self._lock:
            self._reset_state()
        logger.info("Circuit breaker %s force reset to CLOSED", self.name)


# Process-wide breaker shared by every analysis run that calls the LLM
_llm_breaker: Optional[CircuitBreaker] = None
_llm_breaker_lock = threading.Lock()


def get_llm_circuit_breaker(config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
    """Get (creating on first use) the shared LLM circuit breaker."""
    global _llm_breaker
    with _llm_breaker_lock:
        if _llm_breaker is None:
            _llm_breaker = CircuitBreaker("llm", config)
        return _llm_breaker


def reset_llm_circuit_breaker_for_testing() -> None:
    """Drop the shared breaker so the next lookup builds a fresh one."""
    global _llm_breaker
    with _llm_breaker_lock:
        _llm_breaker = None
