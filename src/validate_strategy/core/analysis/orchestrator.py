"""Top-level analysis orchestration.

Drives one session's generation end to end:

- gate on the shared LLM circuit breaker (open -> straight to the retry queue)
- run single-shot or sequential multi-part generation
- persist each part as it lands and record it on the operation
- finalize as completed, partial success, queued for retry, or failed

Tracking calls go through :class:`OperationTracker` and never block or
fail the run.  Only one run per session may be active in a process.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Dict, Optional

from validate_strategy.core.analysis.collaborators import (
    AnalysisPersistence,
    AnalysisResultUpdate,
    EmailSender,
    LoggingNotifier,
    Notifier,
)
from validate_strategy.core.analysis.generation import AnalysisGenerator
from validate_strategy.core.analysis.handoff import accumulate_handoff, extract_state_handoff
from validate_strategy.core.analysis.llm import LLMInvoker
from validate_strategy.core.analysis.models import (
    ActorType,
    AnalysisOutcome,
    OperationState,
    ResumeConfig,
    SessionStatus,
    utc_now,
)
from validate_strategy.core.analysis.partial_results import PartialResultsManager
from validate_strategy.core.analysis.retry_queue import DEFAULT_MAX_RETRIES, RetryQueueStore
from validate_strategy.core.analysis.state_machine import AnalysisStateMachine
from validate_strategy.core.analysis.tracking import OperationTracker
from validate_strategy.core.errors import (
    AnalysisError,
    CircuitBreakerOpenError,
    ErrorCategory,
    InvalidTransitionError,
    QueueItemExistsError,
    classify_error,
    is_queueable,
)
from validate_strategy.core.observability import get_metrics
from validate_strategy.core.resilience import (
    SINGLE_SHOT_MAX_DELAY,
    CircuitBreaker,
    SleepFunc,
    get_llm_circuit_breaker,
    get_tier_error_config,
    with_retry,
)
from validate_strategy.core.tiers import TIER_DISPLAY_NAMES, TIER_PARTS, Tier, is_multi_part, parse_tier

logger = logging.getLogger(__name__)

CIRCUIT_OPEN_QUEUE_MESSAGE = "Circuit breaker open - API temporarily unavailable"

# Tiers whose failures page the operator
_OWNER_ALERT_TIERS = frozenset({Tier.MEDIUM, Tier.FULL})


def _retry_inline(error: AnalysisError) -> bool:
    """Inline retries only for transient errors; an open circuit goes to the queue instead."""
    return error.is_retryable and error.category != ErrorCategory.FATAL


class _RunStopped(Exception):
    """Internal signal: an admin paused or cancelled the operation between parts."""

    def __init__(self, outcome: AnalysisOutcome):
        super().__init__(outcome.value)
        self.outcome = outcome


class AnalysisOrchestrator:
    """Coordinates generation, persistence, tracking, retry queue and notifications.

    Args:
        state_machine: Operation state machine.
        persistence: Session/result store.
        llm: LLM invoker used for every part.
        retry_queue: Store that receives queueable failures.
        breaker: Shared LLM circuit breaker (process-wide one by default).
        tracker: Best-effort operation tracker.
        notifier: Operator/user alerting.
        email_sender: Completion email delivery; emails are skipped when None.
        app_url: Base URL for report links in completion emails.
        queue_max_retries: ``max_retries`` for new queue items.
        rng: Injectable Random for backoff jitter.
        sleep_func: Injectable sleep for inline retries.
    """

    def __init__(
        self,
        state_machine: AnalysisStateMachine,
        persistence: AnalysisPersistence,
        llm: LLMInvoker,
        retry_queue: RetryQueueStore,
        *,
        breaker: Optional[CircuitBreaker] = None,
        tracker: Optional[OperationTracker] = None,
        notifier: Optional[Notifier] = None,
        email_sender: Optional[EmailSender] = None,
        app_url: str = "",
        queue_max_retries: int = DEFAULT_MAX_RETRIES,
        rng: Optional[random.Random] = None,
        sleep_func: Optional[SleepFunc] = None,
    ):
        self.state_machine = state_machine
        self.persistence = persistence
        self.retry_queue = retry_queue
        self.breaker = breaker or get_llm_circuit_breaker()
        self.generator = AnalysisGenerator(llm, self.breaker)
        self.tracker = tracker or OperationTracker(state_machine)
        self.notifier = notifier or LoggingNotifier()
        self.email_sender = email_sender
        self.app_url = app_url.rstrip("/")
        self.queue_max_retries = queue_max_retries
        self._rng = rng
        self._sleep_func = sleep_func
        self._session_locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Entry Points
    # =========================================================================

    def start_analysis_in_background(
        self,
        session_id: str,
        problem_statement: str,
        tier: str | Tier,
        email: Optional[str] = None,
        resume_config: Optional[ResumeConfig] = None,
    ) -> asyncio.Task:
        """Schedule :meth:`run_analysis` and return immediately."""
        task = asyncio.get_running_loop().create_task(
            self.run_analysis(session_id, problem_statement, tier, email, resume_config),
            name=f"analysis:{session_id}",
        )
        task.add_done_callback(self._log_background_result)
        return task

    @staticmethod
    def _log_background_result(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Background analysis %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background analysis %s crashed: %s", task.get_name(), exc, exc_info=exc)

    def is_session_active(self, session_id: str) -> bool:
        lock = self._session_locks.get(session_id)
        return lock is not None and lock.locked()

    async def run_analysis(
        self,
        session_id: str,
        problem_statement: str,
        tier: str | Tier,
        email: Optional[str] = None,
        resume_config: Optional[ResumeConfig] = None,
        *,
        operation_id: Optional[str] = None,
        triggered_by: ActorType = ActorType.USER,
    ) -> AnalysisOutcome:
        """Run one session's analysis to a settled outcome.

        Errors never escape: every failure is classified and ends as
        PARTIAL_SUCCESS, QUEUED or FAILED.  A second call for a session that
        already has a run in this process returns SKIPPED.
        """
        tier = parse_tier(tier)
        if self.is_session_active(session_id):
            logger.warning("Analysis already running for session %s; skipping duplicate start", session_id)
            return AnalysisOutcome.SKIPPED

        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            try:
                return await self._run_locked(
                    session_id, problem_statement, tier, email, resume_config, operation_id, triggered_by
                )
            finally:
                self._session_locks.pop(session_id, None)

    async def resume_session(
        self,
        session_id: str,
        problem_statement: str,
        tier: str | Tier,
        email: Optional[str] = None,
        actor: ActorType = ActorType.RETRY_QUEUE,
    ) -> AnalysisOutcome:
        """Continue a session from its latest operation's last completed part.

        A failed operation is moved back to generating (counted as a retry);
        an initialized or generating one (fresh regeneration, admin resume)
        continues as is.  Without any operation the session runs from scratch.
        """
        tier = parse_tier(tier)
        operation = self.state_machine.get_operation_by_session_id(session_id)
        if operation is None:
            return await self.run_analysis(session_id, problem_statement, tier, email, triggered_by=actor)

        if operation.state == OperationState.COMPLETED:
            logger.info("Session %s already completed by %s", session_id, operation.operation_id)
            return AnalysisOutcome.COMPLETED
        if operation.state == OperationState.CANCELLED:
            return AnalysisOutcome.CANCELLED
        if operation.state == OperationState.PAUSED:
            logger.info("Operation %s is paused; not resuming session %s", operation.operation_id, session_id)
            return AnalysisOutcome.PAUSED

        if operation.state == OperationState.FAILED:
            try:
                operation = self.state_machine.transition(
                    operation.operation_id,
                    OperationState.GENERATING,
                    actor_type=actor,
                    metadata={"resume_from_part": operation.completed_parts + 1},
                )
            except InvalidTransitionError as exc:
                logger.error("Could not restart operation %s: %s", operation.operation_id, exc)
                return AnalysisOutcome.FAILED

        resume = await self._build_resume_config(session_id, operation.completed_parts, operation.handoff_state)
        self.tracker.begin_run(session_id)
        return await self.run_analysis(
            session_id,
            problem_statement,
            tier,
            email,
            resume,
            operation_id=operation.operation_id,
            triggered_by=actor,
        )

    async def _build_resume_config(
        self, session_id: str, completed_parts: int, handoff_state: Optional[str]
    ) -> ResumeConfig:
        previous: Dict[int, str] = {}
        result = await self.persistence.get_analysis_result(session_id)
        if result is not None:
            previous = {n: c for n, c in result.parts.items() if n <= completed_parts}

        handoff = handoff_state or ""
        if not handoff:
            for part_number in sorted(previous):
                handoff = accumulate_handoff(handoff, extract_state_handoff(previous[part_number], part_number))
        return ResumeConfig(
            resume_from_part=completed_parts + 1,
            initial_handoff_state=handoff,
            previous_parts=previous,
        )

    # =========================================================================
    # Run
    # =========================================================================

    async def _run_locked(
        self,
        session_id: str,
        problem_statement: str,
        tier: Tier,
        email: Optional[str],
        resume_config: Optional[ResumeConfig],
        operation_id: Optional[str],
        triggered_by: ActorType,
    ) -> AnalysisOutcome:
        started = time.monotonic()
        if operation_id is None:
            logger.info("Starting %s analysis for session %s", tier.value, session_id)
            operation_id = await self.tracker.track_analysis_start(session_id, tier, triggered_by)

        if not self.breaker.is_call_permitted():
            return await self._queue_circuit_open(session_id, problem_statement, tier, email, operation_id)

        if is_multi_part(tier):
            return await self._run_multi_part(
                session_id, problem_statement, tier, email, resume_config, operation_id, started
            )
        return await self._run_single(session_id, problem_statement, tier, email, operation_id, started)

    async def _queue_circuit_open(
        self,
        session_id: str,
        problem_statement: str,
        tier: Tier,
        email: Optional[str],
        operation_id: Optional[str],
    ) -> AnalysisOutcome:
        error = CircuitBreakerOpenError(
            self.breaker.get_reset_time(),
            {"session_id": session_id, "tier": tier.value},
            breaker_name=self.breaker.name,
        )
        logger.warning("Circuit breaker open; queueing session %s without calling the LLM", session_id)
        newly_queued = self._enqueue(session_id, problem_statement, tier, email, CIRCUIT_OPEN_QUEUE_MESSAGE)
        self.tracker.track_queued_for_retry(session_id, CIRCUIT_OPEN_QUEUE_MESSAGE, operation_id)
        await self.persistence.update_analysis_session_status(session_id, SessionStatus.PROCESSING)
        if newly_queued and email:
            await self._notify_user(session_id, tier, email, True, error)
        return AnalysisOutcome.QUEUED

    async def _run_single(
        self,
        session_id: str,
        problem_statement: str,
        tier: Tier,
        email: Optional[str],
        operation_id: Optional[str],
        started: float,
    ) -> AnalysisOutcome:
        config = get_tier_error_config(tier)
        metrics = get_metrics()

        def on_retry(attempt: int, error: AnalysisError) -> None:
            logger.warning("Retry %d for session %s: %s", attempt, session_id, error.code.value)
            metrics.analysis_event(session_id, tier.value, "retry", (time.monotonic() - started) * 1000)

        self.tracker.track_part_start(session_id, 1, operation_id)
        try:
            content = await with_retry(
                lambda: self.generator.generate_single(problem_statement, tier, session_id),
                max_retries=config.max_retries,
                base_delay=config.base_delay,
                max_delay=min(config.max_delay, SINGLE_SHOT_MAX_DELAY),
                on_retry=on_retry,
                should_retry=_retry_inline,
                rng=self._rng,
                sleep_func=self._sleep_func,
            )
        except Exception as exc:
            return await self.handle_analysis_failure(
                session_id, problem_statement, tier, email, exc, failed_part=1, operation_id=operation_id
            )

        duration_ms = (time.monotonic() - started) * 1000
        await self.persistence.update_analysis_result(
            session_id, AnalysisResultUpdate(single_result=content, generated_at=utc_now())
        )
        await self.persistence.update_analysis_session_status(session_id, SessionStatus.COMPLETED)
        metrics.analysis_event(session_id, tier.value, "success", duration_ms)
        self.tracker.track_part_complete(session_id, 1, duration_ms=int(duration_ms), operation_id=operation_id)
        self.tracker.track_analysis_complete(session_id, duration_ms, operation_id)
        logger.info("Completed %s analysis for session %s in %.0fms", tier.value, session_id, duration_ms)
        await self._send_completion_email(session_id, tier, email)
        return AnalysisOutcome.COMPLETED

    async def _run_multi_part(
        self,
        session_id: str,
        problem_statement: str,
        tier: Tier,
        email: Optional[str],
        resume_config: Optional[ResumeConfig],
        operation_id: Optional[str],
        started: float,
    ) -> AnalysisOutcome:
        resume = resume_config or ResumeConfig()
        partial = PartialResultsManager(session_id, tier, TIER_PARTS[tier])
        for part_number in sorted(resume.previous_parts):
            if part_number < resume.resume_from_part:
                partial.mark_part_complete(part_number, resume.previous_parts[part_number])
        metrics = get_metrics()
        current_part = resume.resume_from_part

        async def on_part_start(part_number: int) -> None:
            nonlocal current_part
            current_part = part_number
            self.tracker.track_part_start(session_id, part_number, operation_id)

        async def on_part_complete(part_number: int, content: str, handoff: str, duration_ms: int) -> None:
            partial.mark_part_complete(part_number, content)
            await self.persistence.update_analysis_result(
                session_id, AnalysisResultUpdate(parts={part_number: content})
            )
            self.tracker.track_part_complete(
                session_id,
                part_number,
                duration_ms=duration_ms,
                handoff_state=handoff,
                operation_id=operation_id,
            )
            metrics.analysis_event(session_id, tier.value, "part_complete", duration_ms)

        async def should_continue(part_number: int) -> bool:
            # Let queued tracking writes land before reading the operation
            await asyncio.sleep(0)
            outcome = self._stop_requested(operation_id)
            if outcome is None:
                return True
            raise _RunStopped(outcome)

        try:
            result = await self.generator.generate_multi_part(
                problem_statement,
                tier,
                session_id=session_id,
                resume=resume,
                on_part_start=on_part_start,
                on_part_complete=on_part_complete,
                should_continue=should_continue,
            )
        except _RunStopped as stopped:
            logger.info(
                "Session %s stopped before part %d (%s)", session_id, current_part, stopped.outcome.value
            )
            return stopped.outcome
        except Exception as exc:
            return await self._handle_multi_part_failure(
                session_id, problem_statement, tier, email, exc, partial, current_part, operation_id, started
            )

        duration_ms = (time.monotonic() - started) * 1000
        await self.persistence.update_analysis_result(
            session_id, AnalysisResultUpdate(full_markdown=result.full_markdown, generated_at=utc_now())
        )
        await self.persistence.update_analysis_session_status(session_id, SessionStatus.COMPLETED)
        metrics.analysis_event(session_id, tier.value, "success", duration_ms)
        self.tracker.track_analysis_complete(session_id, duration_ms, operation_id)
        logger.info(
            "Completed %s analysis for session %s (%d parts) in %.0fms",
            tier.value,
            session_id,
            len(result.parts),
            duration_ms,
        )
        await self._send_completion_email(session_id, tier, email)
        return AnalysisOutcome.COMPLETED

    def _stop_requested(self, operation_id: Optional[str]) -> Optional[AnalysisOutcome]:
        if operation_id is None:
            return None
        try:
            state = self.state_machine.get_operation(operation_id).state
        except Exception as exc:
            logger.warning("Could not read operation %s at part boundary: %s", operation_id, exc)
            return None
        if state == OperationState.CANCELLED:
            return AnalysisOutcome.CANCELLED
        if state == OperationState.PAUSED:
            return AnalysisOutcome.PAUSED
        return None

    async def _handle_multi_part_failure(
        self,
        session_id: str,
        problem_statement: str,
        tier: Tier,
        email: Optional[str],
        error: BaseException,
        partial: PartialResultsManager,
        failed_part: int,
        operation_id: Optional[str],
        started: float,
    ) -> AnalysisOutcome:
        threshold = get_tier_error_config(tier).partial_success_percentage
        completion = partial.get_completion_percentage()
        if partial.get_completed_parts() and completion >= threshold:
            duration_ms = (time.monotonic() - started) * 1000
            logger.warning(
                "Session %s failed at part %d but %.0f%% complete (threshold %.0f%%); saving partial report",
                session_id,
                failed_part,
                completion,
                threshold,
            )
            await self.persistence.update_analysis_result(
                session_id,
                AnalysisResultUpdate(full_markdown=partial.generate_partial_markdown(), generated_at=utc_now()),
            )
            await self.persistence.update_analysis_session_status(session_id, SessionStatus.COMPLETED)
            self.tracker.track_partial_success(
                session_id, len(partial.get_completed_parts()), partial.total_parts, operation_id
            )
            get_metrics().analysis_event(session_id, tier.value, "partial_success", duration_ms)
            logger.info("Missing parts for session %s: %s", session_id, partial.get_missing_parts())
            await self._send_completion_email(session_id, tier, email)
            return AnalysisOutcome.PARTIAL_SUCCESS

        return await self.handle_analysis_failure(
            session_id, problem_statement, tier, email, error, failed_part=failed_part, operation_id=operation_id
        )

    # =========================================================================
    # Failure Handling
    # =========================================================================

    async def handle_analysis_failure(
        self,
        session_id: str,
        problem_statement: str,
        tier: Tier,
        email: Optional[str],
        error: BaseException,
        *,
        failed_part: Optional[int] = None,
        operation_id: Optional[str] = None,
    ) -> AnalysisOutcome:
        """Queue a retryable failure or fail the session.

        Queued sessions stay ``processing``; only non-retryable errors flip
        the session to ``failed``.
        """
        classified = classify_error(error, session_id=session_id, tier=tier.value, part_number=failed_part)
        logger.error(
            "Analysis failed for session %s (%s, %s): %s",
            session_id,
            classified.code.value,
            classified.category.value,
            classified.message,
        )
        get_metrics().analysis_event(session_id, tier.value, "failure", 0)
        self.tracker.track_analysis_failure(
            session_id, classified.message, failed_part, classified.code.value, operation_id
        )

        if is_queueable(classified):
            newly_queued = self._enqueue(session_id, problem_statement, tier, email, classified.message)
            self.tracker.track_queued_for_retry(session_id, classified.message, operation_id)
            await self.persistence.update_analysis_session_status(session_id, SessionStatus.PROCESSING)
            if newly_queued and email:
                await self._notify_user(session_id, tier, email, True, classified)
            return AnalysisOutcome.QUEUED

        await self.persistence.update_analysis_session_status(session_id, SessionStatus.FAILED)
        if email:
            await self._notify_user(session_id, tier, email, False, classified)
        if tier in _OWNER_ALERT_TIERS:
            await self._notify_owner(
                f"Analysis Failed - {TIER_DISPLAY_NAMES[tier]} Tier",
                (
                    f"Session: {session_id}\nTier: {tier.value}\n"
                    f"Error: {classified.message}\nCategory: {classified.category.value}\n\n"
                    "This may require manual intervention or refund."
                ),
            )
        return AnalysisOutcome.FAILED

    def _enqueue(
        self,
        session_id: str,
        problem_statement: str,
        tier: Tier,
        email: Optional[str],
        reason: str,
    ) -> bool:
        """Add the session to the retry queue; False when it is already queued."""
        try:
            self.retry_queue.add(
                session_id,
                tier,
                problem_statement,
                email=email,
                last_error=reason,
                max_retries=self.queue_max_retries,
            )
        except QueueItemExistsError as exc:
            logger.info("Session %s already in retry queue (%s)", session_id, exc.status)
            return False
        return True

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _send_completion_email(self, session_id: str, tier: Tier, email: Optional[str]) -> None:
        if not email or self.email_sender is None:
            return
        try:
            await self.email_sender.send_validate_strategy_email(
                to=email,
                user_name=email.split("@")[0],
                report_url=f"{self.app_url}/analysis/{session_id}",
                transaction_id=session_id,
                tier=tier,
            )
            logger.info("Completion email sent for session %s", session_id)
        except Exception as exc:
            logger.error("Failed to send completion email for session %s: %s", session_id, exc)

    async def _notify_user(
        self, session_id: str, tier: Tier, email: str, queued: bool, error: AnalysisError
    ) -> None:
        try:
            await self.notifier.notify_analysis_failed(session_id, tier, email, queued, error)
        except Exception as exc:
            logger.error("Failed to notify user for session %s: %s", session_id, exc)

    async def _notify_owner(self, title: str, content: str) -> None:
        try:
            await self.notifier.notify_owner(title, content)
        except Exception as exc:
            logger.error("Failed to notify owner: %s", exc)
