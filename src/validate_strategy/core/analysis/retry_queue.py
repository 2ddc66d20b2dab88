"""Retry queue: file-backed store and the background processor that drains it.

Layout:
    {storage_path}/retry_queue/{session_id}.json
    {storage_path}/retry_queue/.queue.lock

All reads and writes hold the single queue lock so the "one active item
per session" rule cannot race.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from filelock import FileLock, Timeout
from pydantic import ValidationError

from validate_strategy.core.analysis.collaborators import AnalysisPersistence, Notifier
from validate_strategy.core.analysis.models import (
    TIER_RETRY_PRIORITY,
    AnalysisOutcome,
    RetryPriority,
    RetryQueueItem,
    RetryStatus,
    SessionStatus,
    utc_now,
)
from validate_strategy.core.analysis.storage import (
    LOCK_ACQUISITION_TIMEOUT,
    atomic_write_json,
    sanitize_id,
)
from validate_strategy.core.errors import (
    LockAcquisitionError,
    MaxRetriesExceededError,
    QueueItemExistsError,
)
from validate_strategy.core.observability import (
    AuditEventType,
    audit_log,
    get_audit_logger,
    get_metrics,
)
from validate_strategy.core.resilience import CircuitBreaker, calculate_backoff, get_tier_error_config
from validate_strategy.core.tiers import TIER_DISPLAY_NAMES, Tier

if TYPE_CHECKING:
    from validate_strategy.core.analysis.orchestrator import AnalysisOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_BATCH_SIZE = 10

# Files under the worker control directory
WORKER_STATUS_FILE = "status.json"
BREAKER_RESET_SIGNAL = "breaker_reset.signal"


class RetryQueueStore:
    """Persist retry queue items, one JSON file per session."""

    def __init__(
        self,
        storage_path: Path,
        lock_timeout: float = LOCK_ACQUISITION_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        self.queue_path = Path(storage_path) / "retry_queue"
        self.queue_path.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = lock_timeout
        self._lock = FileLock(self.queue_path / ".queue.lock", timeout=lock_timeout)
        self._clock = clock
        self._rng = rng

    def _path(self, session_id: str) -> Path:
        return self.queue_path / f"{sanitize_id(session_id)}.json"

    def _read(self, path: Path) -> Optional[RetryQueueItem]:
        if not path.exists():
            return None
        try:
            return RetryQueueItem.model_validate(json.loads(path.read_text()))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Skipping corrupted retry queue item %s: %s", path.name, exc)
            return None

    def _write(self, item: RetryQueueItem) -> RetryQueueItem:
        item.updated_at = self._clock()
        atomic_write_json(self._path(item.session_id), item.model_dump(mode="json"))
        return item

    def _all_unlocked(self) -> List[RetryQueueItem]:
        items = []
        for path in sorted(self.queue_path.glob("*.json")):
            item = self._read(path)
            if item is not None:
                items.append(item)
        return items

    def _update(self, session_id: str, apply: Callable[[RetryQueueItem], None]) -> Optional[RetryQueueItem]:
        try:
            with self._lock:
                item = self._read(self._path(session_id))
                if item is None:
                    return None
                apply(item)
                return self._write(item)
        except Timeout as exc:
            raise LockAcquisitionError("retry_queue", self.lock_timeout) from exc

    # =========================================================================
    # Mutations
    # =========================================================================

    def add(
        self,
        session_id: str,
        tier: str | Tier,
        problem_statement: str,
        *,
        email: Optional[str] = None,
        last_error: Optional[str] = None,
        priority: Optional[RetryPriority] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        next_retry_at: Optional[datetime] = None,
    ) -> RetryQueueItem:
        """Queue a session for retry.

        An inactive (finished) item for the same session is replaced.

        Raises:
            QueueItemExistsError: If the session already has a pending or
                processing item.
        """
        tier = Tier(tier)
        now = self._clock()
        try:
            with self._lock:
                existing = self._read(self._path(session_id))
                if existing is not None and existing.is_active:
                    raise QueueItemExistsError(session_id, existing.status.value)
                item = RetryQueueItem(
                    session_id=session_id,
                    tier=tier,
                    problem_statement=problem_statement,
                    email=email,
                    max_retries=max_retries,
                    priority=priority if priority is not None else TIER_RETRY_PRIORITY[tier],
                    last_error=last_error,
                    next_retry_at=next_retry_at or now,
                    created_at=now,
                    updated_at=now,
                )
                self._write(item)
        except Timeout as exc:
            raise LockAcquisitionError("retry_queue", self.lock_timeout) from exc
        logger.info("Queued session %s for retry (priority %s)", session_id, item.priority.name)
        return item

    def mark_processing(self, session_id: str) -> Optional[RetryQueueItem]:
        def apply(item: RetryQueueItem) -> None:
            item.status = RetryStatus.PROCESSING
            item.last_attempt_at = self._clock()

        return self._update(session_id, apply)

    def mark_completed(self, session_id: str) -> Optional[RetryQueueItem]:
        def apply(item: RetryQueueItem) -> None:
            item.status = RetryStatus.COMPLETED

        return self._update(session_id, apply)

    def mark_failed(self, session_id: str, error: Optional[str] = None) -> Optional[RetryQueueItem]:
        def apply(item: RetryQueueItem) -> None:
            item.status = RetryStatus.FAILED
            if error is not None:
                item.last_error = error

        return self._update(session_id, apply)

    def reschedule(
        self,
        session_id: str,
        error: Optional[str],
        next_retry_at: Optional[datetime] = None,
    ) -> Optional[RetryQueueItem]:
        """Count a failed attempt and schedule the next one.

        Once ``retry_count`` reaches ``max_retries`` the item becomes
        ``failed`` and is never picked up again.
        """

        def apply(item: RetryQueueItem) -> None:
            item.retry_count += 1
            item.last_error = error
            if item.retries_exhausted:
                item.status = RetryStatus.FAILED
                return
            item.status = RetryStatus.PENDING
            item.next_retry_at = next_retry_at or self._clock() + timedelta(
                seconds=self.next_retry_delay(item)
            )

        return self._update(session_id, apply)

    def defer(self, session_id: str, until: datetime) -> Optional[RetryQueueItem]:
        """Push back the next attempt without counting a retry."""

        def apply(item: RetryQueueItem) -> None:
            item.status = RetryStatus.PENDING
            item.next_retry_at = until

        return self._update(session_id, apply)

    def cancel(self, session_id: str) -> bool:
        def apply(item: RetryQueueItem) -> None:
            if item.is_active:
                item.status = RetryStatus.CANCELLED

        item = self._update(session_id, apply)
        return item is not None and item.status == RetryStatus.CANCELLED

    def clear(self) -> int:
        """Cancel every pending item; returns how many were cancelled."""
        cleared = 0
        try:
            with self._lock:
                for item in self._all_unlocked():
                    if item.status == RetryStatus.PENDING:
                        item.status = RetryStatus.CANCELLED
                        self._write(item)
                        cleared += 1
        except Timeout as exc:
            raise LockAcquisitionError("retry_queue", self.lock_timeout) from exc
        return cleared

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, session_id: str) -> Optional[RetryQueueItem]:
        return self._read(self._path(session_id))

    def list_items(self, status: Optional[RetryStatus] = None) -> List[RetryQueueItem]:
        items = self._all_unlocked()
        if status is not None:
            items = [item for item in items if item.status == RetryStatus(status)]
        return items

    def due_items(self, now: Optional[datetime] = None, limit: int = DEFAULT_BATCH_SIZE) -> List[RetryQueueItem]:
        """Pending items whose next attempt is due, highest priority then oldest first."""
        now = now or self._clock()
        due = [
            item
            for item in self._all_unlocked()
            if item.status == RetryStatus.PENDING and item.next_retry_at <= now
        ]
        due.sort(key=lambda item: (-int(item.priority), item.created_at))
        return due[:limit]

    def next_retry_delay(self, item: RetryQueueItem) -> float:
        config = get_tier_error_config(item.tier)
        return calculate_backoff(
            item.retry_count, base_delay=config.base_delay, max_delay=config.max_delay, rng=self._rng
        )

    def stats(self) -> Dict[str, Any]:
        items = self._all_unlocked()
        by_status = Counter(item.status.value for item in items)
        by_tier = Counter(item.tier.value for item in items if item.is_active)
        pending = [item for item in items if item.status == RetryStatus.PENDING]
        oldest = min((item.created_at for item in pending), default=None)
        return {
            "total": len(items),
            "by_status": {status.value: by_status.get(status.value, 0) for status in RetryStatus},
            "active_by_tier": {tier.value: by_tier.get(tier.value, 0) for tier in Tier},
            "oldest_pending_at": oldest.isoformat() if oldest else None,
        }


class RetryQueueProcessor:
    """Interval-based loop that re-runs queued sessions.

    Each poll takes up to ``batch_size`` due items and resumes the
    orchestrator from the last completed part of the session's operation.

    With a ``control_path`` the processor also publishes a status snapshot
    after every poll and honours a breaker-reset signal file dropped there
    by the admin CLI, since the breaker only lives in this process.
    """

    def __init__(
        self,
        store: RetryQueueStore,
        orchestrator: "AnalysisOrchestrator",
        persistence: AnalysisPersistence,
        notifier: Notifier,
        breaker: CircuitBreaker,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        control_path: Optional[Path] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.persistence = persistence
        self.notifier = notifier
        self.breaker = breaker
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.control_path = Path(control_path) if control_path is not None else None
        if self.control_path is not None:
            self.control_path.mkdir(parents=True, exist_ok=True)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start polling in the background (requires a running loop)."""
        if self.is_running:
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run_loop(self._stop_event), name="retry-queue-processor"
        )
        logger.info(
            "Retry queue processor started (interval %.0fs, batch %d)", self.poll_interval, self.batch_size
        )
        return self._task

    async def stop(self) -> None:
        """Stop polling; an in-flight batch finishes first."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Retry queue processor stopped")

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Retry queue poll failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # =========================================================================
    # Processing
    # =========================================================================

    async def run_once(self) -> Dict[str, int]:
        """Process one batch of due items; returns counts by result."""
        self._consume_signals()
        summary: Counter = Counter()
        for item in self.store.due_items(limit=self.batch_size):
            result = await self.process_item(item)
            summary[result] += 1
        if summary:
            logger.info("Retry queue batch processed: %s", dict(summary))
        self._publish_status()
        return dict(summary)

    def _consume_signals(self) -> None:
        if self.control_path is None:
            return
        signal_file = self.control_path / BREAKER_RESET_SIGNAL
        if not signal_file.exists():
            return
        try:
            payload = json.loads(signal_file.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable breaker reset signal: %s", exc)
            payload = {}
        signal_file.unlink(missing_ok=True)
        reset_circuit_breaker(self.breaker, payload.get("requested_by", "unknown"))

    def _publish_status(self) -> None:
        if self.control_path is None:
            return
        try:
            atomic_write_json(
                self.control_path / WORKER_STATUS_FILE,
                {"reported_at": utc_now().isoformat(), **self.get_queue_stats()},
            )
        except OSError as exc:
            logger.warning("Could not write worker status: %s", exc)

    async def process_item(self, item: RetryQueueItem) -> str:
        """Run one retry and settle the item; returns the settlement label."""
        if item.retries_exhausted:
            await self._handle_exhausted(item)
            return "exhausted"

        if not self.breaker.is_call_permitted():
            until = self.breaker.get_reset_time() or utc_now() + timedelta(seconds=self.poll_interval)
            self.store.defer(item.session_id, until)
            logger.info("Circuit open; deferred retry for %s until %s", item.session_id, until.isoformat())
            return "deferred"

        self.store.mark_processing(item.session_id)
        logger.info(
            "Retrying session %s (attempt %d/%d)", item.session_id, item.retry_count + 1, item.max_retries
        )
        try:
            outcome = await self.orchestrator.resume_session(
                item.session_id, item.problem_statement, item.tier, item.email
            )
        except Exception as exc:
            logger.exception("Retry of session %s raised", item.session_id)
            outcome = AnalysisOutcome.QUEUED
            item.last_error = str(exc)

        if outcome in (AnalysisOutcome.COMPLETED, AnalysisOutcome.PARTIAL_SUCCESS):
            self.store.mark_completed(item.session_id)
            get_metrics().counter("retry_queue.completed", labels={"tier": item.tier.value})
            return "completed"
        if outcome == AnalysisOutcome.FAILED:
            self.store.mark_failed(item.session_id, item.last_error)
            return "failed"
        if outcome in (AnalysisOutcome.CANCELLED, AnalysisOutcome.PAUSED):
            self.store.cancel(item.session_id)
            return "cancelled"
        if outcome == AnalysisOutcome.SKIPPED:
            self.store.defer(item.session_id, utc_now() + timedelta(seconds=self.poll_interval))
            return "deferred"

        operation = self.orchestrator.state_machine.get_operation_by_session_id(item.session_id)
        error = (operation.last_error if operation else None) or item.last_error
        updated = self.store.reschedule(item.session_id, error)
        if updated is not None and updated.status == RetryStatus.FAILED:
            await self._handle_exhausted(updated)
            return "exhausted"
        return "rescheduled"

    async def _handle_exhausted(self, item: RetryQueueItem) -> None:
        """Retries used up: fail the item and the session, tell the user and the owner."""
        self.store.mark_failed(item.session_id, item.last_error)
        await self.persistence.update_analysis_session_status(item.session_id, SessionStatus.FAILED)

        error = MaxRetriesExceededError(
            attempts_made=item.retry_count,
            tier=item.tier.value,
            max_retries=item.max_retries,
            context={"session_id": item.session_id},
        )
        audit_log(
            AuditEventType.RETRY_EXHAUSTED.value,
            session_id=item.session_id,
            tier=item.tier.value,
            retry_count=item.retry_count,
            last_error=item.last_error,
        )
        get_metrics().counter("retry_queue.exhausted", labels={"tier": item.tier.value})
        logger.error("Retries exhausted for session %s after %d attempts", item.session_id, item.retry_count)

        if item.email:
            try:
                await self.notifier.notify_analysis_failed(
                    item.session_id, item.tier, item.email, False, error
                )
            except Exception as exc:
                logger.error("Failed to notify user for session %s: %s", item.session_id, exc)
        try:
            await self.notifier.notify_owner(
                f"Retries Exhausted - {TIER_DISPLAY_NAMES[item.tier]} Tier",
                (
                    f"Session: {item.session_id}\nTier: {item.tier.value}\n"
                    f"Attempts: {item.retry_count}/{item.max_retries}\n"
                    f"Last error: {item.last_error}\n\n"
                    "This may require manual intervention or refund."
                ),
            )
        except Exception as exc:
            logger.error("Failed to notify owner for session %s: %s", item.session_id, exc)

    # =========================================================================
    # Admin
    # =========================================================================

    def get_queue_stats(self) -> Dict[str, Any]:
        return {
            **self.store.stats(),
            "processor_running": self.is_running,
            "poll_interval_seconds": self.poll_interval,
            "batch_size": self.batch_size,
            "circuit_breaker": self.breaker.get_stats(),
        }


def reset_circuit_breaker(breaker: CircuitBreaker, admin_wallet: str) -> Dict[str, Any]:
    """Force the breaker closed (admin action)."""
    before = breaker.get_stats()
    breaker.force_reset()
    get_audit_logger().admin_action(
        "reset_circuit_breaker", admin_wallet, breaker=breaker.name, previous_state=before["state"]
    )
    return breaker.get_stats()


def clear_retry_queue(store: RetryQueueStore, admin_wallet: str) -> int:
    """Cancel every pending retry (admin action)."""
    cleared = store.clear()
    get_audit_logger().admin_action("clear_retry_queue", admin_wallet, cleared=cleared)
    return cleared


def request_breaker_reset(control_path: Path, admin_wallet: str) -> Path:
    """Ask a running worker to reset its breaker on the next poll."""
    control_path = Path(control_path)
    control_path.mkdir(parents=True, exist_ok=True)
    signal_file = control_path / BREAKER_RESET_SIGNAL
    atomic_write_json(signal_file, {"requested_by": admin_wallet, "requested_at": utc_now().isoformat()})
    get_audit_logger().admin_action("request_breaker_reset", admin_wallet, signal_file=str(signal_file))
    return signal_file


def read_worker_status(control_path: Path) -> Optional[Dict[str, Any]]:
    """Last status snapshot published by a worker, if any."""
    status_file = Path(control_path) / WORKER_STATUS_FILE
    if not status_file.exists():
        return None
    try:
        return json.loads(status_file.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unreadable worker status %s: %s", status_file, exc)
        return None
