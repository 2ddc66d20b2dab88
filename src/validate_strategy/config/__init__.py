"""Configuration package for validate-strategy.

Sub-modules:
    parsing  – boolean/number/log-level parsing helpers
    domains  – LLMSettings, CircuitBreakerSettings, RetryQueueSettings
    loader   – OrchestratorConfig and layered TOML/env loading
"""

from validate_strategy.config.domains import (  # noqa: F401
    CircuitBreakerSettings,
    LLMSettings,
    RetryQueueSettings,
)
from validate_strategy.config.loader import (  # noqa: F401
    ENV_PREFIX,
    OrchestratorConfig,
)
from validate_strategy.config.parsing import _parse_bool  # noqa: F401

__all__ = [
    "CircuitBreakerSettings",
    "LLMSettings",
    "RetryQueueSettings",
    "ENV_PREFIX",
    "OrchestratorConfig",
]
