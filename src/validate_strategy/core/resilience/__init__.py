"""Resilience primitives: tier retry policy, backoff and circuit breaking."""

from validate_strategy.core.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_llm_circuit_breaker,
    reset_llm_circuit_breaker_for_testing,
)
from validate_strategy.core.resilience.config import (
    SINGLE_SHOT_MAX_DELAY,
    TIER_ERROR_CONFIGS,
    SleepFunc,
    TierErrorConfig,
    get_tier_error_config,
)
from validate_strategy.core.resilience.retry import (
    calculate_backoff,
    counts_against_breaker,
    guarded_call,
    with_retry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "get_llm_circuit_breaker",
    "reset_llm_circuit_breaker_for_testing",
    "SINGLE_SHOT_MAX_DELAY",
    "TIER_ERROR_CONFIGS",
    "SleepFunc",
    "TierErrorConfig",
    "get_tier_error_config",
    "calculate_backoff",
    "counts_against_breaker",
    "guarded_call",
    "with_retry",
]
