"""Admin commands for analysis operations.

Pause, cancel and regenerate act on the operation store directly.  Resume
and regenerate also put the session on the retry queue so the worker picks
the run back up from the next unfinished part.
"""

import asyncio
from typing import Any, Dict, Optional

import click

from validate_strategy.cli.logging import cli_command, get_cli_logger
from validate_strategy.cli.output import ErrorCode, ErrorType, emit_error, emit_success
from validate_strategy.cli.registry import CLIContext, get_context
from validate_strategy.core.analysis.models import OperationState
from validate_strategy.core.errors import (
    AnalysisErrorCode,
    ApiError,
    InvalidTransitionError,
    OperationNotFoundError,
    QueueItemExistsError,
)
from validate_strategy.core.tiers import Tier

logger = get_cli_logger()


def _not_found(operation_id: str) -> None:
    emit_error(
        f"Operation not found: {operation_id}",
        code=ErrorCode.NOT_FOUND,
        error_type=ErrorType.NOT_FOUND,
        remediation="List operations with 'validate-strategy operations list'",
        details={"operation_id": operation_id},
    )


def _invalid_transition(exc: InvalidTransitionError) -> None:
    emit_error(
        str(exc),
        code=ErrorCode.INVALID_TRANSITION,
        error_type=ErrorType.CONFLICT,
        remediation=f"Allowed targets from '{exc.from_state}': {', '.join(exc.allowed) or 'none'}",
        details={"operation_id": exc.operation_id, "from_state": exc.from_state, "to_state": exc.to_state},
    )


def queue_session_for_worker(cli_ctx: CLIContext, session_id: str) -> Dict[str, Any]:
    """Put a stored session on the retry queue, due immediately."""
    session = asyncio.run(cli_ctx.session_store.get_analysis_session_by_id(session_id))
    if session is None:
        logger.warning("Session %s not found; nothing queued", session_id)
        return {"queued": False, "reason": "session_not_found"}
    try:
        cli_ctx.retry_queue.add(
            session_id,
            session.tier,
            session.problem_statement,
            email=session.email,
            max_retries=cli_ctx.config.retry_queue.max_retries,
        )
    except QueueItemExistsError as exc:
        return {"queued": False, "reason": f"already_{exc.status}"}
    return {"queued": True}


@click.group("operations")
def operations_group() -> None:
    """Inspect and control analysis operations."""


@operations_group.command("list")
@click.option("--state", type=click.Choice([s.value for s in OperationState]), help="Filter by state.")
@click.option("--tier", type=click.Choice([t.value for t in Tier]), help="Filter by tier.")
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
@click.pass_context
@cli_command("operations-list")
def list_cmd(
    ctx: click.Context, state: Optional[str], tier: Optional[str], limit: int, offset: int
) -> None:
    """List operations, newest first."""
    state_machine = get_context(ctx).state_machine
    operations = state_machine.get_operations(
        state=OperationState(state) if state else None,
        tier=Tier(tier) if tier else None,
        limit=limit,
        offset=offset,
    )
    emit_success(
        {
            "operations": [op.model_dump(mode="json") for op in operations],
            "count": len(operations),
            "limit": limit,
            "offset": offset,
        }
    )


@operations_group.command("show")
@click.argument("operation_id")
@click.pass_context
@cli_command("operations-show")
def show_cmd(ctx: click.Context, operation_id: str) -> None:
    """Show an operation with its event log and stored part content."""
    state_machine = get_context(ctx).state_machine
    try:
        details = asyncio.run(state_machine.get_operation_details(operation_id))
    except OperationNotFoundError:
        _not_found(operation_id)
    emit_success(details)


@operations_group.command("verify")
@click.argument("operation_id")
@click.pass_context
@cli_command("operations-verify")
def verify_cmd(ctx: click.Context, operation_id: str) -> None:
    """Check the event chain (sequence, hashes, replayed state)."""
    state_machine = get_context(ctx).state_machine
    try:
        verification = state_machine.verify_events(operation_id)
    except OperationNotFoundError:
        _not_found(operation_id)
    emit_success({"operation_id": operation_id, **verification.model_dump()})


@operations_group.command("pause")
@click.argument("operation_id")
@click.option("--admin", "admin_wallet", required=True, help="Admin wallet address.")
@click.option("--reason", help="Why the operation is paused.")
@click.pass_context
@cli_command("operations-pause")
def pause_cmd(ctx: click.Context, operation_id: str, admin_wallet: str, reason: Optional[str]) -> None:
    """Pause a running operation at its next part boundary."""
    state_machine = get_context(ctx).state_machine
    try:
        operation = state_machine.pause_operation(operation_id, admin_wallet, reason)
    except OperationNotFoundError:
        _not_found(operation_id)
    except InvalidTransitionError as exc:
        _invalid_transition(exc)
    emit_success({"operation": operation.model_dump(mode="json")})


@operations_group.command("resume")
@click.argument("operation_id")
@click.option("--admin", "admin_wallet", required=True, help="Admin wallet address.")
@click.pass_context
@cli_command("operations-resume")
def resume_cmd(ctx: click.Context, operation_id: str, admin_wallet: str) -> None:
    """Resume a paused operation from its next unfinished part."""
    cli_ctx = get_context(ctx)
    try:
        operation = cli_ctx.state_machine.resume_operation(operation_id, admin_wallet)
    except OperationNotFoundError:
        _not_found(operation_id)
    except InvalidTransitionError as exc:
        _invalid_transition(exc)
    queue = queue_session_for_worker(cli_ctx, operation.session_id)
    emit_success(
        {
            "operation": operation.model_dump(mode="json"),
            "resume_from_part": operation.completed_parts + 1,
            **queue,
        }
    )


@operations_group.command("cancel")
@click.argument("operation_id")
@click.option("--admin", "admin_wallet", required=True, help="Admin wallet address.")
@click.option("--reason", help="Why the operation is cancelled.")
@click.pass_context
@cli_command("operations-cancel")
def cancel_cmd(ctx: click.Context, operation_id: str, admin_wallet: str, reason: Optional[str]) -> None:
    """Cancel an operation; a run in flight stops before its next part."""
    cli_ctx = get_context(ctx)
    try:
        operation = cli_ctx.state_machine.cancel_operation(operation_id, admin_wallet, reason)
    except OperationNotFoundError:
        _not_found(operation_id)
    except InvalidTransitionError as exc:
        _invalid_transition(exc)
    dequeued = cli_ctx.retry_queue.cancel(operation.session_id)
    emit_success({"operation": operation.model_dump(mode="json"), "dequeued": dequeued})


@operations_group.command("regenerate")
@click.argument("session_id")
@click.option("--admin", "admin_wallet", required=True, help="Admin wallet address.")
@click.option("--from-part", type=click.IntRange(min=1), help="First part to regenerate (default 1).")
@click.option("--notes", help="Admin notes stored on the new operation.")
@click.pass_context
@cli_command("operations-regenerate")
def regenerate_cmd(
    ctx: click.Context,
    session_id: str,
    admin_wallet: str,
    from_part: Optional[int],
    notes: Optional[str],
) -> None:
    """Start a new operation for SESSION_ID and queue it for the worker."""
    cli_ctx = get_context(ctx)
    try:
        operation = asyncio.run(
            cli_ctx.state_machine.trigger_regeneration(
                session_id, admin_wallet, from_part=from_part, notes=notes
            )
        )
    except ApiError as exc:
        if exc.code != AnalysisErrorCode.VALIDATION_SESSION_NOT_FOUND:
            raise
        emit_error(
            f"Session not found: {session_id}",
            code=ErrorCode.NOT_FOUND,
            error_type=ErrorType.NOT_FOUND,
            remediation="Check the session ID with 'validate-strategy sessions list'",
            details={"session_id": session_id},
        )
    except ValueError as exc:
        emit_error(
            str(exc),
            code=ErrorCode.VALIDATION_ERROR,
            error_type=ErrorType.VALIDATION,
            remediation="Pass a --from-part within the tier's part range whose earlier parts are stored",
            details={"session_id": session_id, "from_part": from_part},
        )
    queue = queue_session_for_worker(cli_ctx, session_id)
    emit_success({"operation": operation.model_dump(mode="json"), **queue})
