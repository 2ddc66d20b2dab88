"""Logging setup and per-command instrumentation for the CLI."""

import functools
import logging
import sys
import time
from typing import Any, Callable, TypeVar

F = TypeVar("F", bound=Callable[..., Any])

_CLI_LOGGER_NAME = "validate_strategy.cli"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send logs to stderr so stdout stays machine-readable."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    # basicConfig is a no-op when handlers exist (e.g. under a test harness)
    logging.basicConfig(stream=sys.stderr, format=_LOG_FORMAT)


def get_cli_logger() -> logging.Logger:
    return logging.getLogger(_CLI_LOGGER_NAME)


def cli_command(name: str) -> Callable[[F], F]:
    """Log start, duration and unexpected failures of a command."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            logger = get_cli_logger()
            logger.debug("Running command %s", name)
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                logger.debug("Command %s finished in %.1fms", name, (time.perf_counter() - start) * 1000)

        return wrapper  # type: ignore[return-value]

    return decorator
