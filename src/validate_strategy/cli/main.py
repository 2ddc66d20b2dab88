"""validate-strategy command group."""

from pathlib import Path
from typing import Optional

import click

from validate_strategy import __version__
from validate_strategy.cli.commands import (
    breaker_group,
    operations_group,
    queue_group,
    sessions_group,
    worker_cmd,
)
from validate_strategy.cli.logging import cli_command, configure_logging
from validate_strategy.cli.output import emit_success
from validate_strategy.cli.registry import CLIContext, get_context
from validate_strategy.config import OrchestratorConfig

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding operations, sessions and the retry queue.",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    help="TOML config file (overrides the default lookup).",
)
@click.option("--log-level", type=click.Choice(_LOG_LEVELS, case_sensitive=False), help="Log level for stderr.")
@click.version_option(__version__, prog_name="validate-strategy")
@click.pass_context
def cli(
    ctx: click.Context,
    data_dir: Optional[Path],
    config_file: Optional[str],
    log_level: Optional[str],
) -> None:
    """Operate the analysis orchestration subsystem."""
    config = OrchestratorConfig.from_env(config_file)
    if data_dir is not None:
        config.data_dir = data_dir
    if log_level:
        config.log_level = log_level.upper()
    configure_logging(config.log_level)
    ctx.obj = CLIContext(config)


@cli.command("show-config")
@click.pass_context
@cli_command("show-config")
def show_config_cmd(ctx: click.Context) -> None:
    """Print the effective configuration (API key masked)."""
    emit_success(get_context(ctx).config.to_dict())


cli.add_command(operations_group)
cli.add_command(sessions_group)
cli.add_command(queue_group)
cli.add_command(breaker_group)
cli.add_command(worker_cmd)


if __name__ == "__main__":
    cli()
