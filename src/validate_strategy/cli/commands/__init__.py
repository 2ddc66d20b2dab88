"""CLI command groups."""

from validate_strategy.cli.commands.operations import operations_group
from validate_strategy.cli.commands.queue import breaker_group, queue_group
from validate_strategy.cli.commands.sessions import sessions_group
from validate_strategy.cli.commands.worker import worker_cmd

__all__ = [
    "breaker_group",
    "operations_group",
    "queue_group",
    "sessions_group",
    "worker_cmd",
]
