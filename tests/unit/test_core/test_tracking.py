"""Tests for fire-and-forget operation tracking."""

import pytest

from validate_strategy.core.analysis.models import OperationEventType, OperationState
from validate_strategy.core.analysis.tracking import IDEMPOTENCY_TTL_SECONDS, OperationTracker
from validate_strategy.core.observability import drain_pending
from validate_strategy.core.resilience import CircuitState
from validate_strategy.core.tiers import Tier


@pytest.fixture
def tracker(state_machine, clock):
    return OperationTracker(state_machine, clock=clock)


def _event_types(state_machine, operation_id):
    return [e.event_type for e in state_machine.get_record(operation_id).events]


class TestTrackAnalysisStart:
    """Operation creation for a run."""

    @pytest.mark.asyncio
    async def test_creates_operation(self, tracker, state_machine):
        """The new operation id is returned."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        operation = state_machine.get_operation(op_id)
        assert operation.session_id == "sess-1"
        assert operation.state == OperationState.INITIALIZED

    @pytest.mark.asyncio
    async def test_new_run_not_deduplicated(self, tracker, state_machine):
        """Each start begins a fresh run with its own operation."""
        first = await tracker.track_analysis_start("sess-1", Tier.STANDARD)
        second = await tracker.track_analysis_start("sess-1", Tier.STANDARD)
        assert first != second
        assert [op.session_id for op in state_machine.get_operations()] == ["sess-1", "sess-1"]


class TestPartTracking:
    """Part callbacks recorded in the background."""

    @pytest.mark.asyncio
    async def test_parts_recorded_in_order(self, tracker, state_machine):
        """Scheduled writes land in call order once drained."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.MEDIUM)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        tracker.track_part_complete("sess-1", 1, duration_ms=12, handoff_state="H1", operation_id=op_id)
        tracker.track_part_start("sess-1", 2, operation_id=op_id)
        tracker.track_part_complete("sess-1", 2, operation_id=op_id)
        await drain_pending()

        operation = state_machine.get_operation(op_id)
        assert operation.state == OperationState.COMPLETED
        assert operation.handoff_state == "H1"
        assert _event_types(state_machine, op_id)[-1] == OperationEventType.OPERATION_COMPLETED

    @pytest.mark.asyncio
    async def test_resolves_operation_by_session(self, tracker, state_machine):
        """Without an explicit id the session's latest operation is used."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        tracker.track_part_start("sess-1", 1)
        await drain_pending()
        assert state_machine.get_operation(op_id).state == OperationState.GENERATING

    @pytest.mark.asyncio
    async def test_unknown_session_is_skipped(self, tracker):
        """Tracking a session with no operation does nothing."""
        tracker.track_part_start("ghost", 1)
        await drain_pending()
        assert tracker.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_duplicates_suppressed(self, tracker, state_machine):
        """The same action for the same part is recorded once."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        await drain_pending()
        assert _event_types(state_machine, op_id).count(OperationEventType.PART_STARTED) == 1

    @pytest.mark.asyncio
    async def test_duplicates_expire(self, tracker, state_machine, clock):
        """After the idempotency window the action is recorded again."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        await drain_pending()
        clock.advance(IDEMPOTENCY_TTL_SECONDS + 1)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        await drain_pending()
        assert _event_types(state_machine, op_id).count(OperationEventType.PART_STARTED) == 2

    @pytest.mark.asyncio
    async def test_begin_run_forgets_session_keys(self, tracker):
        """Keys for other sessions survive begin_run."""
        await tracker.track_analysis_start("sess-1", Tier.FULL)
        await tracker.track_analysis_start("sess-2", Tier.FULL)
        tracker.begin_run("sess-1")
        assert tracker.cache_size() == 1


class TestFailureHandling:
    """Tracking errors never reach the caller."""

    @pytest.mark.asyncio
    async def test_store_errors_are_swallowed(self, tracker, state_machine):
        """An invalid write is logged and counted, not raised."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.MEDIUM)
        tracker.track_part_complete("sess-1", 9, operation_id=op_id)
        await drain_pending()
        assert tracker.breaker.failure_count == 1
        assert state_machine.get_operation(op_id).completed_parts == 0

    @pytest.mark.asyncio
    async def test_open_breaker_skips_writes(self, state_machine, breaker):
        """While the tracking breaker is open nothing is written."""
        tracker = OperationTracker(state_machine, breaker=breaker)
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        for _ in range(3):
            breaker.record_failure()
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        await drain_pending()
        assert state_machine.get_operation(op_id).state == OperationState.INITIALIZED

    @pytest.mark.asyncio
    async def test_start_returns_none_when_open(self, state_machine, breaker):
        """No operation id is produced with the breaker open."""
        tracker = OperationTracker(state_machine, breaker=breaker)
        for _ in range(3):
            breaker.record_failure()
        assert await tracker.track_analysis_start("sess-1", Tier.FULL) is None

    @pytest.mark.asyncio
    async def test_duplicate_does_not_take_half_open_trial(self, state_machine, breaker, clock):
        """A suppressed duplicate leaves the half-open trial for the next real write."""
        tracker = OperationTracker(state_machine, breaker=breaker, clock=clock)
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        await drain_pending()
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)

        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        tracker.track_part_complete("sess-1", 1, operation_id=op_id)
        await drain_pending()

        assert breaker.get_state() == CircuitState.CLOSED
        assert state_machine.get_operation(op_id).completed_parts == 1


class TestTerminalTracking:
    """Completion, failure and partial success."""

    @pytest.mark.asyncio
    async def test_failure_of_running_part(self, tracker, state_machine):
        """A failure during a part is recorded as that part failing."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        tracker.track_analysis_failure("sess-1", "boom", failed_part=1, error_code="ERR_1003", operation_id=op_id)
        await drain_pending()

        operation = state_machine.get_operation(op_id)
        assert operation.state == OperationState.FAILED
        assert operation.failed_part == 1
        assert _event_types(state_machine, op_id)[-1] == OperationEventType.PART_FAILED

    @pytest.mark.asyncio
    async def test_failure_between_parts(self, tracker, state_machine):
        """A failure with no part number is a plain transition."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        tracker.track_part_complete("sess-1", 1, operation_id=op_id)
        tracker.track_analysis_failure("sess-1", "circuit open", error_code="ERR_6002", operation_id=op_id)
        await drain_pending()

        record = state_machine.get_record(op_id)
        assert record.operation.state == OperationState.FAILED
        assert record.events[-1].error_code == "ERR_6002"

    @pytest.mark.asyncio
    async def test_failure_before_generation_is_skipped(self, tracker, state_machine):
        """An operation that never started stays initialized."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        tracker.track_analysis_failure("sess-1", "circuit open", operation_id=op_id)
        await drain_pending()
        assert state_machine.get_operation(op_id).state == OperationState.INITIALIZED
        assert tracker.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_failure_is_idempotent_on_failed_operation(self, tracker, state_machine):
        """An operation already failed is left alone."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        tracker.track_part_failure("sess-1", 1, "ERR_1002", "rate limited", operation_id=op_id)
        await drain_pending()
        events_before = len(state_machine.get_record(op_id).events)

        tracker.track_analysis_failure("sess-1", "again", failed_part=1, operation_id=op_id)
        await drain_pending()
        assert len(state_machine.get_record(op_id).events) == events_before

    @pytest.mark.asyncio
    async def test_complete_single_shot(self, tracker, state_machine):
        """A single-shot run is closed by the completion call."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.STANDARD)
        tracker.track_part_start("sess-1", 1, operation_id=op_id)
        tracker.track_analysis_complete("sess-1", 1500.4, operation_id=op_id)
        await drain_pending()

        record = state_machine.get_record(op_id)
        assert record.operation.state == OperationState.COMPLETED
        assert record.events[-1].metadata == {"duration_ms": 1500}

    @pytest.mark.asyncio
    async def test_complete_after_last_part_is_noop(self, tracker, state_machine):
        """Multi-part operations already closed by their last part get no extra event."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.MEDIUM)
        for part in (1, 2):
            tracker.track_part_start("sess-1", part, operation_id=op_id)
            tracker.track_part_complete("sess-1", part, operation_id=op_id)
        await drain_pending()
        events_before = len(state_machine.get_record(op_id).events)

        tracker.track_analysis_complete("sess-1", operation_id=op_id)
        await drain_pending()
        assert len(state_machine.get_record(op_id).events) == events_before

    @pytest.mark.asyncio
    async def test_partial_success(self, tracker, state_machine):
        """Partial success completes the operation with the flag set."""
        op_id = await tracker.track_analysis_start("sess-1", Tier.FULL)
        for part in range(1, 5):
            tracker.track_part_start("sess-1", part, operation_id=op_id)
            tracker.track_part_complete("sess-1", part, operation_id=op_id)
        tracker.track_partial_success("sess-1", 4, 6, operation_id=op_id)
        await drain_pending()

        operation = state_machine.get_operation(op_id)
        assert operation.state == OperationState.COMPLETED
        assert operation.partial_success
        assert operation.completed_parts == 4

    def test_get_status(self, tracker):
        """Status reports the breaker and cache size."""
        status = tracker.get_status()
        assert status["idempotency_cache_size"] == 0
        assert status["breaker"]["state"] == "closed"
