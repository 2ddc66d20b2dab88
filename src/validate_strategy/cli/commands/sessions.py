"""Session commands: submit a problem statement and inspect its progress."""

import asyncio
from typing import Optional

import click

from validate_strategy.cli.commands.operations import queue_session_for_worker
from validate_strategy.cli.logging import cli_command
from validate_strategy.cli.output import ErrorCode, ErrorType, emit_error, emit_success
from validate_strategy.cli.registry import get_context
from validate_strategy.core.analysis.collaborators import AnalysisSession, session_summary
from validate_strategy.core.analysis.models import SessionStatus
from validate_strategy.core.security import MAX_PROBLEM_STATEMENT_LENGTH
from validate_strategy.core.tiers import Tier


@click.group("sessions")
def sessions_group() -> None:
    """Submit and inspect analysis sessions."""


@sessions_group.command("submit")
@click.argument("session_id")
@click.option("--tier", type=click.Choice([t.value for t in Tier]), required=True)
@click.option("--problem", help="Problem statement text.")
@click.option(
    "--problem-file",
    type=click.Path(exists=True, dir_okay=False),
    help="Read the problem statement from a file.",
)
@click.option("--email", help="Where to send the completion email.")
@click.pass_context
@cli_command("sessions-submit")
def submit_cmd(
    ctx: click.Context,
    session_id: str,
    tier: str,
    problem: Optional[str],
    problem_file: Optional[str],
    email: Optional[str],
) -> None:
    """Store a paid session and queue it for the worker."""
    if problem_file:
        with open(problem_file, encoding="utf-8") as f:
            problem = f.read()
    if not problem or not problem.strip():
        emit_error(
            "A problem statement is required",
            code=ErrorCode.VALIDATION_ERROR,
            error_type=ErrorType.VALIDATION,
            remediation="Pass --problem or --problem-file",
        )
    if len(problem) > MAX_PROBLEM_STATEMENT_LENGTH:
        emit_error(
            f"Problem statement exceeds {MAX_PROBLEM_STATEMENT_LENGTH} characters",
            code=ErrorCode.VALIDATION_ERROR,
            error_type=ErrorType.VALIDATION,
            remediation="Shorten the problem statement",
            details={"length": len(problem)},
        )

    cli_ctx = get_context(ctx)
    store = cli_ctx.session_store
    if asyncio.run(store.get_analysis_session_by_id(session_id)) is not None:
        emit_error(
            f"Session already exists: {session_id}",
            code=ErrorCode.CONFLICT,
            error_type=ErrorType.CONFLICT,
            remediation="Use 'operations regenerate' to rerun an existing session",
            details={"session_id": session_id},
        )
    session = AnalysisSession(
        session_id=session_id,
        tier=Tier(tier),
        problem_statement=problem,
        email=email,
        status=SessionStatus.PROCESSING,
    )
    store.save(session)
    queue = queue_session_for_worker(cli_ctx, session_id)
    emit_success({"session": session_summary(session), **queue})


@sessions_group.command("show")
@click.argument("session_id")
@click.option("--report", is_flag=True, help="Include the report markdown.")
@click.pass_context
@cli_command("sessions-show")
def show_cmd(ctx: click.Context, session_id: str, report: bool) -> None:
    """Show a session, its latest operation and its queue item."""
    cli_ctx = get_context(ctx)
    session = asyncio.run(cli_ctx.session_store.get_analysis_session_by_id(session_id))
    if session is None:
        emit_error(
            f"Session not found: {session_id}",
            code=ErrorCode.NOT_FOUND,
            error_type=ErrorType.NOT_FOUND,
            remediation="List sessions with 'validate-strategy sessions list'",
            details={"session_id": session_id},
        )
    operation = cli_ctx.state_machine.get_operation_by_session_id(session_id)
    queue_item = cli_ctx.retry_queue.get(session_id)
    data = {
        "session": session_summary(session),
        "operation": operation.model_dump(mode="json") if operation else None,
        "queue_item": queue_item.model_dump(mode="json", exclude={"problem_statement"}) if queue_item else None,
    }
    if report:
        data["report"] = session.result.full_markdown or session.result.single_result
    emit_success(data)


@sessions_group.command("list")
@click.option("--status", type=click.Choice([s.value for s in SessionStatus]), help="Filter by status.")
@click.pass_context
@cli_command("sessions-list")
def list_cmd(ctx: click.Context, status: Optional[str]) -> None:
    """List stored sessions."""
    sessions = get_context(ctx).session_store.list_sessions()
    if status:
        sessions = [s for s in sessions if s.status == SessionStatus(status)]
    emit_success({"sessions": [session_summary(s) for s in sessions], "count": len(sessions)})
