"""Async retry with exponential backoff and jitter.

Provides:
- calculate_backoff: delay for a given attempt (±25% jitter)
- with_retry: retry a coroutine factory, re-raising the last error
- guarded_call: run one call through a circuit breaker
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from validate_strategy.core.errors import (
    AnalysisError,
    AnalysisErrorCode,
    CircuitBreakerOpenError,
    classify_error,
    is_queueable,
)
from validate_strategy.core.resilience.circuit_breaker import CircuitBreaker
from validate_strategy.core.resilience.config import SleepFunc

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


def counts_against_breaker(error: AnalysisError) -> bool:
    """Retryable failures trip the breaker; fatal errors and breaker rejections do not."""
    return error.code != AnalysisErrorCode.RECOVERY_CIRCUIT_OPEN and is_queueable(error)


def calculate_backoff(
    attempt: int,
    *,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    factor: float = 2.0,
    jitter: bool = True,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay in seconds before retry ``attempt`` (0-based).

    ``base_delay * factor**attempt`` capped at ``max_delay``; jitter spreads
    the result uniformly over ±25% of the capped delay.
    """
    delay = min(base_delay * (factor**attempt), max_delay)
    if jitter:
        spread = delay * JITTER_RATIO
        delay = delay - spread + (rng or random).random() * spread * 2
    return delay


async def with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    on_retry: Optional[Callable[[int, AnalysisError], None]] = None,
    should_retry: Optional[Callable[[AnalysisError], bool]] = None,
    rng: Optional[random.Random] = None,
    sleep_func: Optional[SleepFunc] = None,
) -> T:
    """Retry ``func`` on retryable failures.

    Args:
        func: Coroutine factory (no arguments; use a lambda for args).
        max_retries: Retries after the first attempt.
        base_delay: Initial delay in seconds.
        max_delay: Delay cap in seconds.
        on_retry: Called with (attempt number, classified error) before each wait.
        should_retry: Predicate on the classified error (default: retryable and not fatal).
        rng: Injectable Random for deterministic jitter.
        sleep_func: Injectable sleep for time control in tests.

    Returns:
        Result of the first successful call.

    Raises:
        Exception: The last error raised by ``func`` once retries are exhausted
            or the error is not retryable.
    """
    _sleep = sleep_func or asyncio.sleep
    _should_retry = should_retry or is_queueable

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except Exception as exc:
            classified = classify_error(exc)
            if attempt >= max_retries or not _should_retry(classified):
                raise
            delay = calculate_backoff(attempt, base_delay=base_delay, max_delay=max_delay, rng=rng)
            if on_retry is not None:
                on_retry(attempt + 1, classified)
            logger.info(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt + 1,
                max_retries + 1,
                classified.code.value,
                delay,
            )
            await _sleep(delay)

    raise RuntimeError("with_retry: unexpected state")


async def guarded_call(
    breaker: CircuitBreaker,
    func: Callable[[], Awaitable[T]],
    **context: Any,
) -> T:
    """Run a single call through ``breaker``.

    Raises CircuitBreakerOpenError without calling ``func`` when the breaker
    rejects.  Failures are re-raised classified; only queueable ones count
    against the breaker.  A call that ends without a counted outcome (fatal
    error, cancellation) hands a half-open trial slot back to the breaker.
    """
    if not breaker.can_execute():
        raise CircuitBreakerOpenError(breaker.get_reset_time(), context, breaker_name=breaker.name)
    settled = False
    try:
        result = await func()
        breaker.record_success()
        settled = True
        return result
    except Exception as exc:
        classified = classify_error(exc, **context)
        if counts_against_breaker(classified):
            breaker.record_failure()
            settled = True
        if classified is exc:
            raise
        raise classified from exc
    finally:
        if not settled:
            breaker.release_trial()
