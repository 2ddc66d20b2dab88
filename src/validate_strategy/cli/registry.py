"""Per-invocation CLI context: configuration plus lazily built services."""

from functools import cached_property
from pathlib import Path

import click

from validate_strategy.config import OrchestratorConfig
from validate_strategy.core.analysis.collaborators import FileSessionStore
from validate_strategy.core.analysis.retry_queue import RetryQueueStore
from validate_strategy.core.analysis.state_machine import AnalysisStateMachine
from validate_strategy.core.analysis.storage import OperationStorage


class CLIContext:
    """Services rooted at the configured data directory."""

    def __init__(self, config: OrchestratorConfig):
        self.config = config

    @property
    def data_dir(self) -> Path:
        return Path(self.config.data_dir)

    @property
    def control_path(self) -> Path:
        return self.data_dir / "worker"

    @cached_property
    def operation_storage(self) -> OperationStorage:
        return OperationStorage(self.data_dir)

    @cached_property
    def session_store(self) -> FileSessionStore:
        return FileSessionStore(self.data_dir)

    @cached_property
    def state_machine(self) -> AnalysisStateMachine:
        return AnalysisStateMachine(self.operation_storage, self.session_store)

    @cached_property
    def retry_queue(self) -> RetryQueueStore:
        return RetryQueueStore(self.data_dir)


def get_context(ctx: click.Context) -> CLIContext:
    """CLIContext installed by the root group."""
    obj = ctx.find_object(CLIContext)
    if obj is None:
        raise click.UsageError("CLI context not initialized")
    return obj
