"""Tests for backoff, with_retry and guarded_call."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from validate_strategy.core.errors import (
    AnalysisErrorCode,
    ApiError,
    CircuitBreakerOpenError,
)
from validate_strategy.core.resilience import (
    CircuitState,
    calculate_backoff,
    get_tier_error_config,
    guarded_call,
    with_retry,
)
from validate_strategy.core.tiers import Tier


def _unavailable() -> ApiError:
    return ApiError(AnalysisErrorCode.API_SERVICE_UNAVAILABLE, "503")


def _auth() -> ApiError:
    return ApiError(AnalysisErrorCode.API_AUTHENTICATION, "401")


class _Flaky:
    """Coroutine factory failing a fixed number of times before succeeding."""

    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class TestCalculateBackoff:
    """Exponential delay with ±25% jitter."""

    def test_without_jitter(self):
        """base * factor**attempt, capped at max_delay."""
        assert calculate_backoff(0, base_delay=2, jitter=False) == 2
        assert calculate_backoff(3, base_delay=2, jitter=False) == 16
        assert calculate_backoff(10, base_delay=2, max_delay=30, jitter=False) == 30

    def test_jitter_bounds(self):
        """Jittered delays stay within ±25% of the capped delay."""
        rng = random.Random(42)
        for attempt in range(8):
            capped = min(1.5 * 2**attempt, 15.0)
            delay = calculate_backoff(attempt, base_delay=1.5, max_delay=15.0, rng=rng)
            assert capped * 0.75 <= delay <= capped * 1.25

    def test_seeded_rng_is_deterministic(self):
        """The same seed gives the same delay."""
        a = calculate_backoff(2, rng=random.Random(7))
        b = calculate_backoff(2, rng=random.Random(7))
        assert a == b


class TestTierConfigs:
    """Per-tier resilience tuning."""

    def test_partial_thresholds(self):
        """Full needs 4 of 6 parts; medium 1 of 2."""
        assert get_tier_error_config(Tier.FULL).partial_success_percentage == pytest.approx(66.67, abs=0.01)
        assert get_tier_error_config(Tier.MEDIUM).partial_success_percentage == 50


class TestWithRetry:
    """Generic retry loop."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        """Retryable failures are retried and the result returned."""
        func = _Flaky([_unavailable(), _unavailable()])
        sleep = AsyncMock()
        on_retry = []
        result = await with_retry(
            func,
            max_retries=3,
            sleep_func=sleep,
            rng=random.Random(0),
            on_retry=lambda attempt, err: on_retry.append((attempt, err.code)),
        )
        assert result == "ok"
        assert func.calls == 3
        assert sleep.await_count == 2
        assert on_retry == [
            (1, AnalysisErrorCode.API_SERVICE_UNAVAILABLE),
            (2, AnalysisErrorCode.API_SERVICE_UNAVAILABLE),
        ]

    @pytest.mark.asyncio
    async def test_reraises_last_error_when_exhausted(self):
        """After max_retries the last error propagates unchanged."""
        errors = [_unavailable() for _ in range(3)]
        func = _Flaky(list(errors))
        with pytest.raises(ApiError) as exc_info:
            await with_retry(func, max_retries=2, sleep_func=AsyncMock())
        assert exc_info.value is errors[-1]
        assert func.calls == 3

    @pytest.mark.asyncio
    async def test_fatal_not_retried(self):
        """Fatal errors propagate on the first attempt."""
        func = _Flaky([_auth()])
        sleep = AsyncMock()
        with pytest.raises(ApiError):
            await with_retry(func, max_retries=3, sleep_func=sleep)
        assert func.calls == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_should_retry_predicate(self):
        """A custom predicate can refuse a retryable error."""
        func = _Flaky([_unavailable()])
        with pytest.raises(ApiError):
            await with_retry(func, max_retries=3, should_retry=lambda err: False, sleep_func=AsyncMock())
        assert func.calls == 1


class TestGuardedCall:
    """Single call through the breaker."""

    @pytest.mark.asyncio
    async def test_rejects_when_open(self, breaker):
        """An open breaker raises without calling the function."""
        for _ in range(3):
            breaker.record_failure()
        func = _Flaky([])
        with pytest.raises(CircuitBreakerOpenError):
            await guarded_call(breaker, func, session_id="s1")
        assert func.calls == 0

    @pytest.mark.asyncio
    async def test_retryable_failure_counts(self, breaker):
        """Transient failures are counted and re-raised classified."""
        with pytest.raises(ApiError) as exc_info:
            await guarded_call(breaker, _Flaky([RuntimeError("503 service unavailable")]))
        assert exc_info.value.code == AnalysisErrorCode.API_SERVICE_UNAVAILABLE
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_fatal_failure_not_counted(self, breaker):
        """Fatal failures bypass breaker accounting."""
        err = _auth()
        with pytest.raises(ApiError) as exc_info:
            await guarded_call(breaker, _Flaky([err]))
        assert exc_info.value is err
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_success_recorded(self, breaker):
        """A success reports to the breaker and returns the value."""
        assert await guarded_call(breaker, _Flaky([], result=42)) == 42

    @pytest.mark.asyncio
    async def test_fatal_trial_frees_half_open_slot(self, breaker, clock):
        """A half-open trial ending in a fatal error leaves room for the next trial."""
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)
        with pytest.raises(ApiError):
            await guarded_call(breaker, _Flaky([_auth()]))
        assert breaker.get_state() == CircuitState.HALF_OPEN
        assert breaker.is_call_permitted()

        assert await guarded_call(breaker, _Flaky([])) == "ok"
        assert breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_half_open_slot(self, breaker, clock):
        """Cancellation during the trial does not wedge the breaker."""
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)
        with pytest.raises(asyncio.CancelledError):
            await guarded_call(breaker, _Flaky([asyncio.CancelledError()]))
        assert breaker.get_state() == CircuitState.HALF_OPEN
        assert breaker.can_execute()

    @pytest.mark.asyncio
    async def test_counted_trial_failure_reopens(self, breaker, clock):
        """A retryable trial failure reopens instead of releasing the slot."""
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)
        with pytest.raises(ApiError):
            await guarded_call(breaker, _Flaky([_unavailable()]))
        assert breaker.is_open()
