"""Tests for the retry queue processor and its admin helpers."""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from validate_strategy.core.analysis.models import AnalysisOutcome, RetryStatus, SessionStatus, utc_now
from validate_strategy.core.analysis.retry_queue import (
    BREAKER_RESET_SIGNAL,
    WORKER_STATUS_FILE,
    RetryQueueProcessor,
    clear_retry_queue,
    read_worker_status,
    request_breaker_reset,
    reset_circuit_breaker,
)
from validate_strategy.core.errors import MaxRetriesExceededError
from validate_strategy.core.resilience import CircuitState
from validate_strategy.core.tiers import Tier


@pytest.fixture
def mock_orchestrator():
    orchestrator = MagicMock()
    orchestrator.resume_session = AsyncMock(return_value=AnalysisOutcome.COMPLETED)
    orchestrator.state_machine.get_operation_by_session_id.return_value = None
    return orchestrator


@pytest.fixture
def processor(retry_queue, mock_orchestrator, session_store, notifier, breaker):
    return RetryQueueProcessor(retry_queue, mock_orchestrator, session_store, notifier, breaker, poll_interval=30)


class TestProcessItem:
    """Outcome of one retry mapped onto the queue item."""

    @pytest.mark.asyncio
    async def test_completed(self, processor, retry_queue, mock_orchestrator):
        """A successful resume completes the item."""
        retry_queue.add("s1", Tier.FULL, "problem", email="a@b.test")
        assert await processor.process_item(retry_queue.get("s1")) == "completed"
        mock_orchestrator.resume_session.assert_awaited_once_with("s1", "problem", Tier.FULL, "a@b.test")
        assert retry_queue.get("s1").status == RetryStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_partial_success_counts_as_completed(self, processor, retry_queue, mock_orchestrator):
        """Partial success settles the item too."""
        mock_orchestrator.resume_session.return_value = AnalysisOutcome.PARTIAL_SUCCESS
        retry_queue.add("s1", Tier.FULL, "p")
        assert await processor.process_item(retry_queue.get("s1")) == "completed"

    @pytest.mark.asyncio
    async def test_fatal_failure(self, processor, retry_queue, mock_orchestrator):
        """A non-retryable failure fails the item."""
        mock_orchestrator.resume_session.return_value = AnalysisOutcome.FAILED
        retry_queue.add("s1", Tier.FULL, "p")
        assert await processor.process_item(retry_queue.get("s1")) == "failed"
        assert retry_queue.get("s1").status == RetryStatus.FAILED

    @pytest.mark.asyncio
    async def test_paused_operation_cancels_item(self, processor, retry_queue, mock_orchestrator):
        """An operation held by an admin takes the item out of the queue."""
        mock_orchestrator.resume_session.return_value = AnalysisOutcome.PAUSED
        retry_queue.add("s1", Tier.FULL, "p")
        assert await processor.process_item(retry_queue.get("s1")) == "cancelled"
        assert retry_queue.get("s1").status == RetryStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_skipped_is_deferred(self, processor, retry_queue, mock_orchestrator):
        """A session already running is tried again next poll, without a retry counted."""
        mock_orchestrator.resume_session.return_value = AnalysisOutcome.SKIPPED
        retry_queue.add("s1", Tier.FULL, "p")
        assert await processor.process_item(retry_queue.get("s1")) == "deferred"
        item = retry_queue.get("s1")
        assert item.status == RetryStatus.PENDING
        assert item.retry_count == 0
        assert item.next_retry_at > utc_now()

    @pytest.mark.asyncio
    async def test_requeued_run_is_rescheduled(self, processor, retry_queue, mock_orchestrator):
        """A retryable failure counts a retry with the operation's last error."""
        mock_orchestrator.resume_session.return_value = AnalysisOutcome.QUEUED
        mock_orchestrator.state_machine.get_operation_by_session_id.return_value = MagicMock(
            last_error="rate limited on part 4"
        )
        retry_queue.add("s1", Tier.FULL, "p")
        assert await processor.process_item(retry_queue.get("s1")) == "rescheduled"
        item = retry_queue.get("s1")
        assert item.retry_count == 1
        assert item.status == RetryStatus.PENDING
        assert item.last_error == "rate limited on part 4"

    @pytest.mark.asyncio
    async def test_resume_exception_is_rescheduled(self, processor, retry_queue, mock_orchestrator):
        """An unexpected exception is treated as a retryable failure."""
        mock_orchestrator.resume_session.side_effect = RuntimeError("disk full")
        retry_queue.add("s1", Tier.MEDIUM, "p")
        assert await processor.process_item(retry_queue.get("s1")) == "rescheduled"
        assert retry_queue.get("s1").last_error == "disk full"

    @pytest.mark.asyncio
    async def test_open_breaker_defers(self, processor, retry_queue, mock_orchestrator, breaker):
        """While the breaker is open the item waits for the reset time."""
        for _ in range(3):
            breaker.record_failure()
        retry_queue.add("s1", Tier.FULL, "p")
        assert await processor.process_item(retry_queue.get("s1")) == "deferred"
        mock_orchestrator.resume_session.assert_not_awaited()
        item = retry_queue.get("s1")
        assert item.next_retry_at == breaker.get_reset_time()
        assert item.retry_count == 0


class TestExhaustion:
    """Giving up on a session."""

    @pytest.mark.asyncio
    async def test_last_retry_exhausts(
        self, processor, retry_queue, mock_orchestrator, make_session, session_store, notifier
    ):
        """The final failed attempt fails the session and alerts user and owner."""
        make_session("s1", Tier.FULL, email="a@b.test")
        mock_orchestrator.resume_session.return_value = AnalysisOutcome.QUEUED
        retry_queue.add("s1", Tier.FULL, "p", email="a@b.test", max_retries=2)

        assert await processor.process_item(retry_queue.get("s1")) == "rescheduled"
        assert await processor.process_item(retry_queue.get("s1")) == "exhausted"

        assert retry_queue.get("s1").status == RetryStatus.FAILED
        session = await session_store.get_analysis_session_by_id("s1")
        assert session.status == SessionStatus.FAILED
        assert notifier.user_notices[0]["queued"] is False
        assert isinstance(notifier.user_notices[0]["error"], MaxRetriesExceededError)
        assert notifier.owner_alerts[0]["title"] == "Retries Exhausted - Syndicate Tier"
        assert "Attempts: 2/2" in notifier.owner_alerts[0]["content"]

    @pytest.mark.asyncio
    async def test_exhausted_item_not_retried(self, processor, retry_queue, mock_orchestrator, notifier):
        """An item with no retries left is settled without calling the orchestrator."""
        retry_queue.add("s1", Tier.STANDARD, "p", max_retries=0)
        assert await processor.process_item(retry_queue.get("s1")) == "exhausted"
        mock_orchestrator.resume_session.assert_not_awaited()
        assert notifier.user_notices == []
        assert notifier.owner_alerts[0]["title"] == "Retries Exhausted - Observer Tier"

    @pytest.mark.asyncio
    async def test_notifier_errors_are_logged(self, processor, retry_queue, notifier):
        """A failing notifier does not stop the item being settled."""
        notifier.notify_owner = AsyncMock(side_effect=RuntimeError("smtp down"))
        retry_queue.add("s1", Tier.FULL, "p", max_retries=0)
        assert await processor.process_item(retry_queue.get("s1")) == "exhausted"
        assert retry_queue.get("s1").status == RetryStatus.FAILED

    @pytest.mark.asyncio
    async def test_audit_entry(self, processor, retry_queue, caplog):
        """Exhaustion is written to the audit log."""
        retry_queue.add("s1", Tier.FULL, "p", max_retries=0)
        with caplog.at_level("INFO"):
            await processor.process_item(retry_queue.get("s1"))
        assert "AUDIT: retry_exhausted" in [r.getMessage() for r in caplog.records]


class TestRunOnce:
    """Batch polling."""

    @pytest.mark.asyncio
    async def test_priority_order(self, processor, retry_queue, mock_orchestrator):
        """Due items are resumed highest priority first."""
        retry_queue.add("std", Tier.STANDARD, "p", next_retry_at=utc_now() - timedelta(seconds=1))
        retry_queue.add("full", Tier.FULL, "p", next_retry_at=utc_now() - timedelta(seconds=1))
        summary = await processor.run_once()
        order = [c.args[0] for c in mock_orchestrator.resume_session.await_args_list]
        assert order == ["full", "std"]
        assert summary == {"completed": 2}

    @pytest.mark.asyncio
    async def test_future_items_wait(self, processor, retry_queue, mock_orchestrator):
        """Items not yet due are left alone."""
        retry_queue.add("s1", Tier.FULL, "p", next_retry_at=utc_now() + timedelta(hours=1))
        assert await processor.run_once() == {}
        mock_orchestrator.resume_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batch_size(self, retry_queue, mock_orchestrator, session_store, notifier, breaker):
        """At most batch_size items are processed per poll."""
        processor = RetryQueueProcessor(
            retry_queue, mock_orchestrator, session_store, notifier, breaker, batch_size=2
        )
        for n in range(3):
            retry_queue.add(f"s{n}", Tier.MEDIUM, "p", next_retry_at=utc_now() - timedelta(seconds=1))
        await processor.run_once()
        assert mock_orchestrator.resume_session.await_count == 2


class TestWorkerControl:
    """Status snapshots and the breaker reset signal."""

    @pytest.fixture
    def control_path(self, data_dir):
        return data_dir / "worker"

    @pytest.fixture
    def controlled(self, retry_queue, mock_orchestrator, session_store, notifier, breaker, control_path):
        return RetryQueueProcessor(
            retry_queue, mock_orchestrator, session_store, notifier, breaker, control_path=control_path
        )

    @pytest.mark.asyncio
    async def test_status_published(self, controlled, control_path, retry_queue):
        """Each poll writes a status snapshot readable by the CLI."""
        retry_queue.add("s1", Tier.FULL, "p", next_retry_at=utc_now() + timedelta(hours=1))
        await controlled.run_once()
        status = read_worker_status(control_path)
        assert status["by_status"]["pending"] == 1
        assert status["circuit_breaker"]["state"] == "closed"
        assert "reported_at" in status

    @pytest.mark.asyncio
    async def test_reset_signal_consumed(self, controlled, control_path, breaker):
        """A reset request closes the breaker on the next poll and is removed."""
        for _ in range(3):
            breaker.record_failure()
        signal_file = request_breaker_reset(control_path, "0xadmin")
        assert signal_file.name == BREAKER_RESET_SIGNAL

        await controlled.run_once()
        assert breaker.get_state() == CircuitState.CLOSED
        assert not signal_file.exists()

    @pytest.mark.asyncio
    async def test_unreadable_signal_still_resets(self, controlled, control_path, breaker):
        """A garbled signal file is still honoured."""
        for _ in range(3):
            breaker.record_failure()
        (control_path / BREAKER_RESET_SIGNAL).write_text("not json")
        await controlled.run_once()
        assert breaker.get_state() == CircuitState.CLOSED

    def test_read_status_missing_or_corrupt(self, control_path):
        """No status file, or a broken one, reads as None."""
        assert read_worker_status(control_path) is None
        control_path.mkdir()
        (control_path / WORKER_STATUS_FILE).write_text("{")
        assert read_worker_status(control_path) is None


class TestLifecycle:
    """Background polling loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, retry_queue, mock_orchestrator, session_store, notifier, breaker):
        """The loop polls immediately and stops promptly."""
        processor = RetryQueueProcessor(
            retry_queue, mock_orchestrator, session_store, notifier, breaker, poll_interval=60
        )
        retry_queue.add("s1", Tier.FULL, "p", next_retry_at=utc_now() - timedelta(seconds=1))

        task = processor.start()
        assert processor.start() is task
        for _ in range(50):
            if mock_orchestrator.resume_session.await_count:
                break
            await asyncio.sleep(0.01)
        await asyncio.wait_for(processor.stop(), timeout=1)

        assert not processor.is_running
        mock_orchestrator.resume_session.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_poll_errors_do_not_kill_loop(self, processor, monkeypatch):
        """A failing poll is logged and the loop keeps running."""
        monkeypatch.setattr(processor, "run_once", AsyncMock(side_effect=RuntimeError("boom")))
        processor.poll_interval = 0.01
        processor.start()
        await asyncio.sleep(0.05)
        assert processor.is_running
        await processor.stop()
        assert processor.run_once.await_count >= 2

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, processor, monkeypatch):
        """A stopped processor can start again and stop again."""
        monkeypatch.setattr(processor, "run_once", AsyncMock(return_value={}))
        await processor.stop()
        first = processor.start()
        await asyncio.wait_for(processor.stop(), timeout=1)
        second = processor.start()
        assert second is not first
        assert processor.is_running
        await asyncio.wait_for(processor.stop(), timeout=1)
        assert not processor.is_running

    def test_queue_stats(self, processor):
        """Stats include processor settings and breaker state."""
        stats = processor.get_queue_stats()
        assert stats["processor_running"] is False
        assert stats["poll_interval_seconds"] == 30
        assert stats["circuit_breaker"]["name"] == "llm-test"


class TestAdminHelpers:
    """Admin actions are audited."""

    def test_reset_circuit_breaker(self, breaker, caplog):
        """Forcing the breaker closed is recorded with the actor."""
        for _ in range(3):
            breaker.record_failure()
        with caplog.at_level("INFO"):
            stats = reset_circuit_breaker(breaker, "0xadmin")
        assert stats["state"] == "closed"
        record = next(r for r in caplog.records if r.getMessage() == "AUDIT: admin_action")
        assert record.audit["actor_id"] == "0xadmin"
        assert record.audit["details"]["previous_state"] == "open"

    def test_clear_retry_queue(self, retry_queue):
        """Pending items are cancelled and counted."""
        retry_queue.add("s1", Tier.FULL, "p")
        retry_queue.add("s2", Tier.MEDIUM, "p")
        assert clear_retry_queue(retry_queue, "0xadmin") == 2
        assert retry_queue.list_items(RetryStatus.PENDING) == []

    def test_request_reset_writes_payload(self, tmp_path):
        """The signal names the requesting admin."""
        signal_file = request_breaker_reset(tmp_path / "ctl", "0xadmin")
        assert json.loads(signal_file.read_text())["requested_by"] == "0xadmin"
