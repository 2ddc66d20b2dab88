"""Tests for file-backed operation and session storage."""

import asyncio
import json

import pytest
from filelock import FileLock

from validate_strategy.core.analysis.collaborators import (
    AnalysisResultUpdate,
    AnalysisSession,
    FileSessionStore,
    LoggingEmailSender,
    LoggingNotifier,
    session_summary,
)
from validate_strategy.core.analysis.models import AnalysisOperation, OperationEventType, OperationState, SessionStatus
from validate_strategy.core.analysis.storage import atomic_write_json, sanitize_id
from validate_strategy.core.errors import (
    AnalysisErrorCode,
    ApiError,
    LockAcquisitionError,
    OperationNotFoundError,
    RecordCorruptedError,
)
from validate_strategy.core.tiers import Tier


def _operation(operation_id="op_1", session_id="sess-1"):
    return AnalysisOperation(operation_id=operation_id, session_id=session_id, tier=Tier.MEDIUM, total_parts=2)


_STARTED = {"event_type": OperationEventType.OPERATION_STARTED, "new_state": OperationState.INITIALIZED}


class TestHelpers:
    """Identifier sanitising and atomic writes."""

    def test_sanitize_id(self):
        """Path separators are replaced; dot names rejected."""
        assert sanitize_id("sess/../x") == "sess_.._x"
        with pytest.raises(ValueError):
            sanitize_id("..")

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        """The target is written and no temp file remains."""
        target = tmp_path / "doc.json"
        atomic_write_json(target, {"a": 1})
        assert json.loads(target.read_text()) == {"a": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


class TestOperationStorage:
    """Operation documents with their event log."""

    def test_create_and_load(self, operation_storage):
        """A created record round-trips with its first event sealed."""
        operation_storage.create(_operation(), _STARTED)
        record = operation_storage.load("op_1")
        assert record.operation.session_id == "sess-1"
        assert record.events[0].event_hash == record.events[0].compute_hash()

    def test_create_twice_rejected(self, operation_storage):
        """Operation ids are unique."""
        operation_storage.create(_operation(), _STARTED)
        with pytest.raises(FileExistsError):
            operation_storage.create(_operation(), _STARTED)

    def test_load_missing(self, operation_storage):
        """Missing records load as None."""
        assert operation_storage.load("op_missing") is None

    def test_update_missing(self, operation_storage):
        """Updating a missing record raises OperationNotFoundError."""
        with pytest.raises(OperationNotFoundError):
            operation_storage.update("op_missing", lambda op: (op, {}))

    def test_mutator_error_writes_nothing(self, operation_storage):
        """A mutator that raises leaves the stored record untouched."""
        operation_storage.create(_operation(), _STARTED)

        def boom(op):
            op.completed_parts = 1
            raise RuntimeError("rejected")

        with pytest.raises(RuntimeError):
            operation_storage.update("op_1", boom)
        record = operation_storage.load("op_1")
        assert record.operation.completed_parts == 0
        assert len(record.events) == 1

    def test_update_revalidates(self, operation_storage):
        """Invariant violations from a mutator are rejected."""
        operation_storage.create(_operation(), _STARTED)

        def overflow(op):
            op.completed_parts = 5
            return op, {"event_type": OperationEventType.PART_COMPLETED}

        with pytest.raises(ValueError):
            operation_storage.update("op_1", overflow)
        assert operation_storage.load("op_1").operation.completed_parts == 0

    def test_corrupted_record(self, operation_storage):
        """Unparseable files raise on load and are skipped when listing."""
        operation_storage.create(_operation("op_good"), _STARTED)
        (operation_storage.operations_path / "op_bad.json").write_text("{not json")
        with pytest.raises(RecordCorruptedError):
            operation_storage.load("op_bad")
        assert [op.operation_id for op in operation_storage.list_operations()] == ["op_good"]
        assert operation_storage.count() == 2

    def test_lock_timeout(self, operation_storage):
        """A held lock surfaces as LockAcquisitionError."""
        operation_storage.create(_operation(), _STARTED)
        operation_storage.lock_timeout = 0.05
        holder = FileLock(operation_storage.locks_path / "op_1.lock")
        with holder:
            with pytest.raises(LockAcquisitionError):
                operation_storage.update("op_1", lambda op: (op, {"event_type": OperationEventType.PART_STARTED}))


class TestFileSessionStore:
    """Session persistence used by the orchestrator."""

    @pytest.mark.asyncio
    async def test_result_updates_merge(self, session_store, make_session):
        """Part updates merge and None fields are left alone."""
        make_session("sess-1", Tier.FULL)
        await session_store.update_analysis_result("sess-1", AnalysisResultUpdate(parts={1: "one"}))
        await session_store.update_analysis_result("sess-1", AnalysisResultUpdate(parts={2: "two"}))
        await session_store.update_analysis_result("sess-1", AnalysisResultUpdate(full_markdown="# Report"))

        result = await session_store.get_analysis_result("sess-1")
        assert result.parts == {1: "one", 2: "two"}
        assert result.full_markdown == "# Report"
        assert result.single_result is None

    @pytest.mark.asyncio
    async def test_status_update(self, session_store, make_session):
        """Status changes persist."""
        make_session("sess-1")
        await session_store.update_analysis_session_status("sess-1", SessionStatus.COMPLETED)
        session = await session_store.get_analysis_session_by_id("sess-1")
        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_session_update_is_skipped(self, session_store):
        """Updating an unknown session is a logged no-op."""
        await session_store.update_analysis_session_status("ghost", SessionStatus.FAILED)
        assert await session_store.get_analysis_session_by_id("ghost") is None
        assert await session_store.get_analysis_result("ghost") is None

    @pytest.mark.asyncio
    async def test_locked_session_does_not_stall_event_loop(self, session_store, make_session):
        """A writer waiting on another holder's lock leaves the loop free."""
        make_session("sess-1")
        holder = FileLock(session_store.locks_path / f"{sanitize_id('sess-1')}.lock")
        holder.acquire()
        try:
            update = asyncio.create_task(
                session_store.update_analysis_session_status("sess-1", SessionStatus.FAILED)
            )
            await asyncio.sleep(0.05)
            assert not update.done()
        finally:
            holder.release()
        await update
        session = await session_store.get_analysis_session_by_id("sess-1")
        assert session.status == SessionStatus.FAILED

    def test_part_numbers_validated(self):
        """Result updates only accept parts 1..6."""
        with pytest.raises(ValueError):
            AnalysisResultUpdate(parts={7: "x"})

    def test_list_skips_corrupted(self, session_store, make_session):
        """Corrupted session files are skipped."""
        make_session("sess-1")
        (session_store.sessions_path / "broken.json").write_text("[]")
        assert [s.session_id for s in session_store.list_sessions()] == ["sess-1"]

    def test_summary(self, tmp_path):
        """session_summary reports parts and whether a report exists."""
        store = FileSessionStore(tmp_path)
        session = AnalysisSession(session_id="s", tier=Tier.MEDIUM, problem_statement="p")
        session.result.parts = {2: "b", 1: "a"}
        store.save(session)
        summary = session_summary(session)
        assert summary["parts"] == [1, 2]
        assert summary["has_report"] is False
        assert summary["tier"] == "medium"


class TestLoggingCollaborators:
    """Audit-log backed notifier and email sender."""

    @pytest.mark.asyncio
    async def test_notifier_audits(self, caplog):
        """User and owner notifications are written as audit entries."""
        notifier = LoggingNotifier()
        error = ApiError(AnalysisErrorCode.API_RATE_LIMIT, "429")
        with caplog.at_level("INFO"):
            await notifier.notify_analysis_failed("s1", Tier.FULL, "a@b.test", True, error)
            await notifier.notify_owner("Title", "Body")
        messages = [r.getMessage() for r in caplog.records]
        assert "AUDIT: analysis_queued" in messages
        assert "AUDIT: owner_alert" in messages

    @pytest.mark.asyncio
    async def test_email_sender_audits(self, caplog):
        """Completion emails are recorded with their report link."""
        with caplog.at_level("INFO"):
            await LoggingEmailSender().send_validate_strategy_email(
                to="a@b.test",
                user_name="a",
                report_url="https://app/analysis/s1",
                transaction_id="s1",
                tier=Tier.FULL,
            )
        record = next(r for r in caplog.records if r.getMessage() == "AUDIT: report_emailed")
        assert record.audit["details"]["report_url"] == "https://app/analysis/s1"
