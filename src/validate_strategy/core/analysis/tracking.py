"""Best-effort bridge from orchestration callbacks to the operation state machine.

Tracking must never block or fail generation.  Every ``track_*`` call is
scheduled with :func:`fire_and_forget`; failures are logged and counted
against a private circuit breaker so a broken operation store is skipped
rather than hammered.  Duplicate calls for the same session, action and
part are suppressed for ``IDEMPOTENCY_TTL_SECONDS``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from validate_strategy.core.analysis.models import ActorType, OperationState
from validate_strategy.core.analysis.state_machine import AnalysisStateMachine
from validate_strategy.core.observability import fire_and_forget
from validate_strategy.core.resilience import CircuitBreaker, CircuitBreakerConfig
from validate_strategy.core.tiers import Tier

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL_SECONDS = 300.0

# Prune expired keys once the cache grows past this size
_IDEMPOTENCY_PRUNE_SIZE = 100

TRACKING_BREAKER_CONFIG = CircuitBreakerConfig(failure_threshold=5, reset_timeout=60.0)

# Only a running operation can move to failed
_RUNNING_STATES = frozenset({OperationState.GENERATING, OperationState.PART_COMPLETED})


class OperationTracker:
    """Fire-and-forget operation tracking.

    Args:
        state_machine: Operation state machine to record into.
        breaker: Breaker guarding the tracking store (private by default).
        clock: Monotonic clock for idempotency expiry.
    """

    def __init__(
        self,
        state_machine: AnalysisStateMachine,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state_machine = state_machine
        self.breaker = breaker or CircuitBreaker("tracking", TRACKING_BREAKER_CONFIG)
        self._clock = clock
        self._processed: Dict[str, float] = {}

    # =========================================================================
    # Idempotency
    # =========================================================================

    @staticmethod
    def idempotency_key(session_id: str, action: str, part_number: Optional[int] = None) -> str:
        if part_number is None:
            return f"{session_id}:{action}"
        return f"{session_id}:{action}:{part_number}"

    def _already_processed(self, key: str) -> bool:
        stamp = self._processed.get(key)
        if stamp is None:
            return False
        if self._clock() - stamp > IDEMPOTENCY_TTL_SECONDS:
            del self._processed[key]
            return False
        return True

    def _mark_processed(self, key: str) -> None:
        now = self._clock()
        self._processed[key] = now
        if len(self._processed) > _IDEMPOTENCY_PRUNE_SIZE:
            for stale in [k for k, v in self._processed.items() if now - v > IDEMPOTENCY_TTL_SECONDS]:
                del self._processed[stale]

    def begin_run(self, session_id: str) -> None:
        """Forget idempotency keys for a session so a new run is tracked afresh."""
        prefix = f"{session_id}:"
        for key in [k for k in self._processed if k.startswith(prefix)]:
            del self._processed[key]

    def cache_size(self) -> int:
        return len(self._processed)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _safe_execute(
        self,
        action: str,
        session_id: str,
        fn: Callable[[], Any],
        key: Optional[str] = None,
    ) -> Any:
        if key is not None and self._already_processed(key):
            logger.debug("Duplicate %s ignored for session %s", action, session_id)
            return None
        if not self.breaker.can_execute():
            logger.warning("Tracking circuit open, skipping %s for session %s", action, session_id)
            return None
        try:
            result = fn()
        except Exception as exc:
            self.breaker.record_failure()
            logger.error("Tracking %s failed for session %s: %s", action, session_id, exc)
            return None
        self.breaker.record_success()
        if key is not None:
            self._mark_processed(key)
        return result

    def _schedule(
        self,
        action: str,
        session_id: str,
        fn: Callable[[], Any],
        part_number: Optional[int] = None,
    ) -> None:
        key = self.idempotency_key(session_id, action, part_number)
        fire_and_forget(self._safe_execute(action, session_id, fn, key), name=f"track:{key}")

    def _resolve(self, session_id: str, operation_id: Optional[str]) -> Optional[str]:
        if operation_id is not None:
            return operation_id
        operation = self.state_machine.get_operation_by_session_id(session_id)
        if operation is None:
            logger.warning("No operation found for session %s, skipping tracking", session_id)
            return None
        return operation.operation_id

    # =========================================================================
    # Public API
    # =========================================================================

    async def track_analysis_start(
        self,
        session_id: str,
        tier: Tier,
        triggered_by: ActorType = ActorType.USER,
    ) -> Optional[str]:
        """Create the operation for a new run; awaited so the id can be threaded through."""
        self.begin_run(session_id)

        def create() -> str:
            return self.state_machine.create_operation(session_id, tier, triggered_by).operation_id

        return await self._safe_execute(
            "start", session_id, create, self.idempotency_key(session_id, "start")
        )

    def track_part_start(self, session_id: str, part_number: int, operation_id: Optional[str] = None) -> None:
        def start() -> None:
            op_id = self._resolve(session_id, operation_id)
            if op_id is not None:
                self.state_machine.record_part_start(op_id, part_number)

        self._schedule("part_start", session_id, start, part_number)

    def track_part_complete(
        self,
        session_id: str,
        part_number: int,
        *,
        duration_ms: int = 0,
        token_count: Optional[int] = None,
        handoff_state: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> None:
        def complete() -> None:
            op_id = self._resolve(session_id, operation_id)
            if op_id is not None:
                self.state_machine.record_part_completion(
                    op_id,
                    part_number,
                    duration_ms=duration_ms,
                    token_count=token_count,
                    handoff_state=handoff_state,
                )

        self._schedule("part_complete", session_id, complete, part_number)

    def track_part_failure(
        self,
        session_id: str,
        part_number: int,
        error_code: str,
        error_message: str,
        operation_id: Optional[str] = None,
    ) -> None:
        def fail() -> None:
            op_id = self._resolve(session_id, operation_id)
            if op_id is not None:
                self.state_machine.record_part_failure(op_id, part_number, error_code, error_message)

        self._schedule("part_failure", session_id, fail, part_number)

    def track_analysis_complete(
        self, session_id: str, duration_ms: float = 0, operation_id: Optional[str] = None
    ) -> None:
        def complete() -> None:
            op_id = self._resolve(session_id, operation_id)
            if op_id is None:
                return
            # The last part's completion already closes multi-part operations
            if self.state_machine.get_operation(op_id).is_terminal:
                return
            self.state_machine.transition(
                op_id, OperationState.COMPLETED, metadata={"duration_ms": round(duration_ms)}
            )

        self._schedule("complete", session_id, complete)

    def track_analysis_failure(
        self,
        session_id: str,
        error_message: str,
        failed_part: Optional[int] = None,
        error_code: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> None:
        def fail() -> None:
            op_id = self._resolve(session_id, operation_id)
            if op_id is None:
                return
            operation = self.state_machine.get_operation(op_id)
            if operation.state not in _RUNNING_STATES:
                logger.info("Operation %s is %s; failure not recorded", op_id, operation.state.value)
                return
            if failed_part is not None:
                self.state_machine.record_part_failure(
                    op_id, failed_part, error_code or "UNKNOWN_ERROR", error_message
                )
                return
            self.state_machine.transition(
                op_id,
                OperationState.FAILED,
                error_code=error_code,
                error_message=error_message,
                metadata={"failed_part": failed_part},
            )

        self._schedule("failure", session_id, fail)

    def track_partial_success(
        self,
        session_id: str,
        completed_parts: int,
        total_parts: int,
        operation_id: Optional[str] = None,
    ) -> None:
        def partial() -> None:
            op_id = self._resolve(session_id, operation_id)
            if op_id is not None:
                self.state_machine.record_partial_success(op_id)
                logger.info(
                    "Operation %s completed partially (%d/%d)", op_id, completed_parts, total_parts
                )

        self._schedule("partial_success", session_id, partial)

    def track_queued_for_retry(self, session_id: str, reason: str, operation_id: Optional[str] = None) -> None:
        """Note a hand-off to the retry queue; the queue processor owns the state change."""

        def queued() -> None:
            op_id = operation_id
            if op_id is None:
                operation = self.state_machine.get_operation_by_session_id(session_id)
                op_id = operation.operation_id if operation else None
            logger.info("Session %s (operation %s) queued for retry: %s", session_id, op_id, reason)

        self._schedule("queued_retry", session_id, queued)

    def get_status(self) -> Dict[str, Any]:
        return {"breaker": self.breaker.get_stats(), "idempotency_cache_size": self.cache_size()}
