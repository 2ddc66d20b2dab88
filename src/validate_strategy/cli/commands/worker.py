"""Retry queue worker: runs the processor until SIGINT/SIGTERM."""

import asyncio
import signal
import threading
from typing import Any, Dict

import click

from validate_strategy.cli.logging import cli_command, get_cli_logger
from validate_strategy.cli.output import ErrorCode, ErrorType, emit_error, emit_success
from validate_strategy.cli.registry import CLIContext, get_context
from validate_strategy.core.analysis.collaborators import LoggingEmailSender, LoggingNotifier
from validate_strategy.core.analysis.llm import LLMClient
from validate_strategy.core.analysis.orchestrator import AnalysisOrchestrator
from validate_strategy.core.analysis.retry_queue import RetryQueueProcessor
from validate_strategy.core.errors import ApiError
from validate_strategy.core.observability import drain_pending
from validate_strategy.core.resilience import get_llm_circuit_breaker

logger = get_cli_logger()

# Seconds to wait for best-effort tracking tasks on shutdown
SHUTDOWN_DRAIN_TIMEOUT = 5.0


def build_processor(cli_ctx: CLIContext) -> RetryQueueProcessor:
    """Wire the orchestrator and processor from configuration.

    Raises:
        ApiError: If the LLM API key is not configured.
    """
    config = cli_ctx.config
    llm = LLMClient(
        config.llm.api_url,
        config.llm.api_key,
        config.llm.model,
        timeout=config.llm.timeout_seconds,
    )
    breaker = get_llm_circuit_breaker(config.circuit_breaker.to_breaker_config())
    notifier = LoggingNotifier()
    orchestrator = AnalysisOrchestrator(
        cli_ctx.state_machine,
        cli_ctx.session_store,
        llm,
        cli_ctx.retry_queue,
        breaker=breaker,
        notifier=notifier,
        email_sender=LoggingEmailSender() if config.email_enabled else None,
        app_url=config.app_url,
        queue_max_retries=config.retry_queue.max_retries,
    )
    return RetryQueueProcessor(
        cli_ctx.retry_queue,
        orchestrator,
        cli_ctx.session_store,
        notifier,
        breaker,
        poll_interval=config.retry_queue.poll_interval_seconds,
        batch_size=config.retry_queue.batch_size,
        control_path=cli_ctx.control_path,
    )


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            # Fallback for loops without signal support; signals need the main thread
            if threading.current_thread() is threading.main_thread():
                signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop.set))


async def _run_forever(processor: RetryQueueProcessor) -> None:
    stop = asyncio.Event()
    _install_stop_handlers(stop)
    processor.start()
    await stop.wait()
    logger.info("Stop requested; finishing current batch")
    await processor.stop()
    await drain_pending(SHUTDOWN_DRAIN_TIMEOUT)


async def _run_single_poll(processor: RetryQueueProcessor) -> Dict[str, Any]:
    summary = await processor.run_once()
    await drain_pending(SHUTDOWN_DRAIN_TIMEOUT)
    return summary


@click.command("worker")
@click.option("--once", is_flag=True, help="Process one batch of due items and exit.")
@click.pass_context
@cli_command("worker")
def worker_cmd(ctx: click.Context, once: bool) -> None:
    """Run the retry queue processor until SIGINT/SIGTERM."""
    cli_ctx = get_context(ctx)
    try:
        processor = build_processor(cli_ctx)
    except ApiError as exc:
        emit_error(
            exc.message,
            code=ErrorCode.CONFIGURATION_ERROR,
            error_type=ErrorType.CONFIGURATION,
            remediation="Set VALIDATE_STRATEGY_LLM_API_KEY or [llm].api_key in the config file",
        )

    if once:
        summary = asyncio.run(_run_single_poll(processor))
        emit_success({"mode": "once", "processed": summary, "queue": cli_ctx.retry_queue.stats()})
        return

    logger.info(
        "Worker started (data dir %s, poll every %.0fs)",
        cli_ctx.data_dir,
        processor.poll_interval,
    )
    asyncio.run(_run_forever(processor))
    emit_success({"mode": "daemon", "stopped": True})
