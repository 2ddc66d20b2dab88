"""Tests for the sessions commands."""

from validate_strategy.core.security import MAX_PROBLEM_STATEMENT_LENGTH


class TestSubmit:
    """sessions submit."""

    def test_submit_queues_session(self, invoke):
        """A new session is stored as processing and queued for the worker."""
        data = invoke("sessions", "submit", "sess-1", "--tier", "full", "--problem", "Churn doubled", "--email", "a@b.test")
        assert data["data"]["session"]["status"] == "processing"
        assert data["data"]["queued"] is True

        queue = invoke("queue", "list")["data"]
        assert queue["count"] == 1
        item = queue["items"][0]
        assert item["session_id"] == "sess-1"
        assert item["priority"] == 3
        assert "problem_statement" not in item

    def test_problem_from_file(self, invoke, tmp_path):
        """--problem-file reads the statement from disk."""
        problem = tmp_path / "problem.txt"
        problem.write_text("Support tickets take four days to close.")
        data = invoke("sessions", "submit", "sess-1", "--tier", "standard", "--problem-file", str(problem))
        assert data["data"]["session"]["tier"] == "standard"

    def test_problem_required(self, invoke):
        """An empty statement is a validation error."""
        data = invoke("sessions", "submit", "sess-1", "--tier", "full", "--problem", "   ", expect_exit=1)
        assert data["success"] is False
        assert data["data"]["error_code"] == "VALIDATION_ERROR"

    def test_problem_too_long(self, invoke):
        """Overlong statements are rejected."""
        data = invoke(
            "sessions",
            "submit",
            "sess-1",
            "--tier",
            "full",
            "--problem",
            "x" * (MAX_PROBLEM_STATEMENT_LENGTH + 1),
            expect_exit=1,
        )
        assert data["data"]["details"]["length"] == MAX_PROBLEM_STATEMENT_LENGTH + 1

    def test_duplicate_session(self, invoke):
        """Submitting an existing session id is a conflict."""
        invoke("sessions", "submit", "sess-1", "--tier", "medium", "--problem", "p")
        data = invoke("sessions", "submit", "sess-1", "--tier", "medium", "--problem", "p", expect_exit=1)
        assert data["data"]["error_code"] == "CONFLICT"


class TestShowAndList:
    """sessions show / list."""

    def test_show(self, invoke):
        """show includes the queue item and no operation before the worker runs."""
        invoke("sessions", "submit", "sess-1", "--tier", "medium", "--problem", "p")
        data = invoke("sessions", "show", "sess-1", "--report")["data"]
        assert data["session"]["session_id"] == "sess-1"
        assert data["operation"] is None
        assert data["queue_item"]["status"] == "pending"
        assert data["report"] is None

    def test_show_missing(self, invoke):
        """Unknown sessions are NOT_FOUND."""
        data = invoke("sessions", "show", "ghost", expect_exit=1)
        assert data["data"]["error_code"] == "NOT_FOUND"

    def test_list_filter(self, invoke):
        """--status filters the listing."""
        invoke("sessions", "submit", "sess-1", "--tier", "medium", "--problem", "p")
        assert invoke("sessions", "list")["data"]["count"] == 1
        assert invoke("sessions", "list", "--status", "completed")["data"]["count"] == 0
