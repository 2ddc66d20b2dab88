"""Section dataclasses for the ``[llm]``, ``[circuit_breaker]`` and ``[retry_queue]`` tables."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from validate_strategy.config.parsing import _parse_number
from validate_strategy.core.resilience import CircuitBreakerConfig


@dataclass
class LLMSettings:
    """LLM endpoint settings.

    Attributes:
        api_url: OpenAI-compatible chat completions endpoint
        api_key: Bearer token; required by the worker
        model: Model name sent with every request
        timeout_seconds: HTTP timeout for one call
    """

    api_url: str = "https://api.openai.com/v1/chat/completions"
    api_key: Optional[str] = None
    model: str = "gpt-4o"
    timeout_seconds: float = 120.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any], base: Optional["LLMSettings"] = None) -> "LLMSettings":
        defaults = base or cls()
        return cls(
            api_url=str(data.get("api_url", defaults.api_url)),
            api_key=data.get("api_key", defaults.api_key),
            model=str(data.get("model", defaults.model)),
            timeout_seconds=_parse_number(
                "llm.timeout_seconds",
                data.get("timeout_seconds", defaults.timeout_seconds),
                float,
                defaults.timeout_seconds,
            ),
        )


@dataclass
class CircuitBreakerSettings:
    """Shared LLM circuit breaker tuning (seconds)."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    failure_window_seconds: float = 120.0

    @classmethod
    def from_toml_dict(
        cls, data: Dict[str, Any], base: Optional["CircuitBreakerSettings"] = None
    ) -> "CircuitBreakerSettings":
        defaults = base or cls()
        return cls(
            failure_threshold=_parse_number(
                "circuit_breaker.failure_threshold",
                data.get("failure_threshold", defaults.failure_threshold),
                int,
                defaults.failure_threshold,
            ),
            reset_timeout_seconds=_parse_number(
                "circuit_breaker.reset_timeout_seconds",
                data.get("reset_timeout_seconds", defaults.reset_timeout_seconds),
                float,
                defaults.reset_timeout_seconds,
            ),
            failure_window_seconds=_parse_number(
                "circuit_breaker.failure_window_seconds",
                data.get("failure_window_seconds", defaults.failure_window_seconds),
                float,
                defaults.failure_window_seconds,
            ),
        )

    def to_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            reset_timeout=self.reset_timeout_seconds,
            failure_window=self.failure_window_seconds,
        )


@dataclass
class RetryQueueSettings:
    """Retry queue processor tuning."""

    poll_interval_seconds: float = 30.0
    batch_size: int = 10
    max_retries: int = 5

    @classmethod
    def from_toml_dict(
        cls, data: Dict[str, Any], base: Optional["RetryQueueSettings"] = None
    ) -> "RetryQueueSettings":
        defaults = base or cls()
        return cls(
            poll_interval_seconds=_parse_number(
                "retry_queue.poll_interval_seconds",
                data.get("poll_interval_seconds", defaults.poll_interval_seconds),
                float,
                defaults.poll_interval_seconds,
            ),
            batch_size=_parse_number(
                "retry_queue.batch_size", data.get("batch_size", defaults.batch_size), int, defaults.batch_size
            ),
            max_retries=_parse_number(
                "retry_queue.max_retries", data.get("max_retries", defaults.max_retries), int, defaults.max_retries
            ),
        )
