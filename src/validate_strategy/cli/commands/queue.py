"""Retry queue and circuit breaker admin commands.

The LLM circuit breaker lives inside the worker process, so ``breaker
status`` reads the worker's last published snapshot and ``breaker reset``
drops a signal file the worker consumes on its next poll.
"""

from typing import Optional

import click

from validate_strategy.cli.logging import cli_command
from validate_strategy.cli.output import emit_success
from validate_strategy.cli.registry import get_context
from validate_strategy.core.analysis.models import RetryStatus
from validate_strategy.core.analysis.retry_queue import (
    clear_retry_queue,
    read_worker_status,
    request_breaker_reset,
)


@click.group("queue")
def queue_group() -> None:
    """Inspect and administer the retry queue."""


@queue_group.command("stats")
@click.pass_context
@cli_command("queue-stats")
def stats_cmd(ctx: click.Context) -> None:
    """Counts by status and tier, plus the worker's last report."""
    cli_ctx = get_context(ctx)
    emit_success(
        {
            "queue": cli_ctx.retry_queue.stats(),
            "worker": read_worker_status(cli_ctx.control_path),
        }
    )


@queue_group.command("list")
@click.option("--status", type=click.Choice([s.value for s in RetryStatus]), help="Filter by status.")
@click.pass_context
@cli_command("queue-list")
def list_cmd(ctx: click.Context, status: Optional[str]) -> None:
    """List queue items."""
    items = get_context(ctx).retry_queue.list_items(RetryStatus(status) if status else None)
    emit_success(
        {
            "items": [item.model_dump(mode="json", exclude={"problem_statement"}) for item in items],
            "count": len(items),
        }
    )


@queue_group.command("clear")
@click.option("--admin", "admin_wallet", required=True, help="Admin wallet address.")
@click.pass_context
@cli_command("queue-clear")
def clear_cmd(ctx: click.Context, admin_wallet: str) -> None:
    """Cancel every pending retry."""
    cleared = clear_retry_queue(get_context(ctx).retry_queue, admin_wallet)
    emit_success({"cleared": cleared})


@click.group("breaker")
def breaker_group() -> None:
    """Inspect and reset the LLM circuit breaker."""


@breaker_group.command("status")
@click.pass_context
@cli_command("breaker-status")
def breaker_status_cmd(ctx: click.Context) -> None:
    """Breaker state as last reported by the worker."""
    status = read_worker_status(get_context(ctx).control_path)
    if status is None:
        emit_success({"reported": False, "circuit_breaker": None})
        return
    emit_success(
        {
            "reported": True,
            "reported_at": status.get("reported_at"),
            "circuit_breaker": status.get("circuit_breaker"),
        }
    )


@breaker_group.command("reset")
@click.option("--admin", "admin_wallet", required=True, help="Admin wallet address.")
@click.pass_context
@cli_command("breaker-reset")
def breaker_reset_cmd(ctx: click.Context, admin_wallet: str) -> None:
    """Force the breaker closed on the worker's next poll."""
    signal_file = request_breaker_reset(get_context(ctx).control_path, admin_wallet)
    emit_success({"action": "reset_requested", "signal_file": str(signal_file)})
