"""Tests for the operations commands."""

import asyncio

import pytest

from validate_strategy.core.analysis.collaborators import AnalysisResultUpdate, AnalysisSession, FileSessionStore
from validate_strategy.core.analysis.models import SessionStatus
from validate_strategy.core.analysis.state_machine import AnalysisStateMachine
from validate_strategy.core.analysis.storage import OperationStorage
from validate_strategy.core.tiers import Tier

ADMIN = "0xadmin"


@pytest.fixture
def cli_state(cli_data_dir):
    """State machine over the same data dir the CLI uses."""
    cli_data_dir.mkdir(parents=True, exist_ok=True)
    sessions = FileSessionStore(cli_data_dir)
    machine = AnalysisStateMachine(OperationStorage(cli_data_dir), sessions)
    sessions.save(
        AnalysisSession(
            session_id="sess-1",
            tier=Tier.FULL,
            problem_statement="Trial users never invite teammates.",
            status=SessionStatus.PROCESSING,
        )
    )
    return machine


@pytest.fixture
def running_op(cli_state):
    """Full-tier operation generating part 2."""
    op = cli_state.create_operation("sess-1", Tier.FULL)
    cli_state.record_part_start(op.operation_id, 1)
    cli_state.record_part_completion(op.operation_id, 1, handoff_state="handoff-1")
    cli_state.record_part_start(op.operation_id, 2)
    return op.operation_id


class TestInspect:
    """list / show / verify."""

    def test_list_filters(self, invoke, running_op):
        """Filters by state and tier."""
        data = invoke("operations", "list")["data"]
        assert data["count"] == 1
        assert data["operations"][0]["operation_id"] == running_op
        assert invoke("operations", "list", "--state", "generating")["data"]["count"] == 1
        assert invoke("operations", "list", "--tier", "medium")["data"]["count"] == 0

    def test_show(self, invoke, running_op):
        """show returns the operation and its event log."""
        data = invoke("operations", "show", running_op)["data"]
        assert data["operation"]["completed_parts"] == 1
        assert [e["event_type"] for e in data["events"]][0] == "operation_started"
        assert data["parts"] == {}

    def test_verify(self, invoke, running_op):
        """A clean chain verifies."""
        data = invoke("operations", "verify", running_op)["data"]
        assert data["operation_id"] == running_op
        assert data["valid"] is True
        assert data["total_events"] == 4

    @pytest.mark.parametrize("command", ["show", "verify"])
    def test_unknown_operation(self, invoke, cli_state, command):
        """Unknown ids are NOT_FOUND."""
        data = invoke("operations", command, "op-missing", expect_exit=1)
        assert data["data"]["error_code"] == "NOT_FOUND"


class TestAdminControls:
    """pause / resume / cancel / regenerate."""

    def test_pause_then_resume_queues_session(self, invoke, running_op):
        """Resume hands the session back to the worker from the next part."""
        paused = invoke("operations", "pause", running_op, "--admin", ADMIN, "--reason", "review")["data"]
        assert paused["operation"]["state"] == "paused"

        resumed = invoke("operations", "resume", running_op, "--admin", ADMIN)["data"]
        assert resumed["operation"]["state"] == "generating"
        assert resumed["resume_from_part"] == 2
        assert resumed["queued"] is True

        again = invoke("operations", "pause", running_op, "--admin", ADMIN)
        assert again["data"]["operation"]["state"] == "paused"
        resumed_twice = invoke("operations", "resume", running_op, "--admin", ADMIN)["data"]
        assert resumed_twice["queued"] is False
        assert resumed_twice["reason"] == "already_pending"

    def test_resume_requires_paused(self, invoke, running_op):
        """Resuming a running operation is an invalid transition."""
        data = invoke("operations", "resume", running_op, "--admin", ADMIN, expect_exit=1)
        assert data["data"]["error_code"] == "INVALID_TRANSITION"

    def test_pause_requires_running(self, invoke, cli_state):
        """An initialized operation cannot be paused."""
        op = cli_state.create_operation("sess-1", Tier.FULL)
        data = invoke("operations", "pause", op.operation_id, "--admin", ADMIN, expect_exit=1)
        assert data["data"]["error_code"] == "INVALID_TRANSITION"

    def test_cancel_dequeues(self, invoke, running_op):
        """Cancel drops the pending retry for the session."""
        invoke("operations", "pause", running_op, "--admin", ADMIN)
        invoke("operations", "resume", running_op, "--admin", ADMIN)

        data = invoke("operations", "cancel", running_op, "--admin", ADMIN, "--reason", "refund")["data"]
        assert data["operation"]["state"] == "cancelled"
        assert data["dequeued"] is True

        again = invoke("operations", "cancel", running_op, "--admin", ADMIN, expect_exit=1)
        assert again["data"]["error_code"] == "INVALID_TRANSITION"

    def test_cancel_unknown(self, invoke, cli_state):
        """Cancelling an unknown operation is NOT_FOUND."""
        data = invoke("operations", "cancel", "op-missing", "--admin", ADMIN, expect_exit=1)
        assert data["data"]["error_code"] == "NOT_FOUND"

    def test_regenerate_from_part(self, invoke, cli_state, running_op):
        """Regeneration creates a new operation and queues the session."""
        asyncio.run(
            cli_state.persistence.update_analysis_result(
                "sess-1", AnalysisResultUpdate(parts={1: "One", 2: "Two", 3: "Three"})
            )
        )
        data = invoke("operations", "regenerate", "sess-1", "--admin", ADMIN, "--from-part", "4", "--notes", "redo")[
            "data"
        ]
        assert data["operation"]["operation_id"] != running_op
        assert data["operation"]["completed_parts"] == 3
        assert data["operation"]["triggered_by"] == "admin"
        assert data["operation"]["admin_notes"] == "redo"
        assert data["queued"] is True

    def test_regenerate_part_out_of_range(self, invoke, cli_state):
        """from-part beyond the tier's parts is a validation error."""
        data = invoke("operations", "regenerate", "sess-1", "--admin", ADMIN, "--from-part", "7", expect_exit=1)
        assert data["data"]["error_code"] == "VALIDATION_ERROR"
        assert data["data"]["details"]["from_part"] == 7

    def test_regenerate_without_earlier_parts(self, invoke, running_op):
        """Parts before --from-part must be stored; nothing is queued otherwise."""
        data = invoke("operations", "regenerate", "sess-1", "--admin", ADMIN, "--from-part", "4", expect_exit=1)
        assert data["data"]["error_code"] == "VALIDATION_ERROR"
        assert data["data"]["details"] == {"session_id": "sess-1", "from_part": 4}
        listed = invoke("operations", "list")["data"]
        assert listed["count"] == 1

    def test_regenerate_unknown_session(self, invoke, cli_state):
        """Unknown sessions are NOT_FOUND."""
        data = invoke("operations", "regenerate", "ghost", "--admin", ADMIN, expect_exit=1)
        assert data["data"]["error_code"] == "NOT_FOUND"
