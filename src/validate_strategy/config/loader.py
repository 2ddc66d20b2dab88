"""OrchestratorConfig and its layered loading.

Priority (highest to lowest):
1. Environment variables (``VALIDATE_STRATEGY_*``)
2. Explicit config file (``--config`` / ``VALIDATE_STRATEGY_CONFIG_FILE``), or
   project TOML (./validate-strategy.toml)
3. User TOML (~/.validate-strategy.toml)
4. XDG config ($XDG_CONFIG_HOME/validate-strategy/config.toml)
5. Defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from validate_strategy.config.domains import CircuitBreakerSettings, LLMSettings, RetryQueueSettings
from validate_strategy.config.parsing import _parse_bool, _parse_log_level, _parse_number

logger = logging.getLogger(__name__)

ENV_PREFIX = "VALIDATE_STRATEGY_"
PROJECT_CONFIG_NAME = "validate-strategy.toml"
USER_CONFIG_NAME = ".validate-strategy.toml"

DEFAULT_DATA_DIR = Path(".validate-strategy")


def _env(name: str) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}")


@dataclass
class OrchestratorConfig:
    """Runtime configuration for the worker and the admin CLI."""

    data_dir: Path = DEFAULT_DATA_DIR
    log_level: str = "INFO"
    app_url: str = "http://localhost:3000"
    email_enabled: bool = False
    llm: LLMSettings = field(default_factory=LLMSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    retry_queue: RetryQueueSettings = field(default_factory=RetryQueueSettings)

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "OrchestratorConfig":
        """Build configuration from TOML layers and environment overrides."""
        config = cls()

        toml_path = config_file or _env("CONFIG_FILE")
        if toml_path:
            config._load_toml(Path(toml_path))
        else:
            xdg_config_home = os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")
            for path in (
                Path(xdg_config_home) / "validate-strategy" / "config.toml",
                Path.home() / USER_CONFIG_NAME,
                Path(PROJECT_CONFIG_NAME),
            ):
                if path.exists():
                    config._load_toml(path)
                    logger.debug("Loaded config from %s", path)

        config._load_env()
        return config

    def _load_toml(self, path: Path) -> None:
        """Apply one TOML file on top of the current values."""
        if not path.exists():
            logger.warning("Config file not found: %s", path)
            return

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.error("Error loading config file %s: %s", path, exc)
            return

        self.apply_dict(data)

    def apply_dict(self, data: Dict[str, Any]) -> None:
        if "data_dir" in data:
            self.data_dir = Path(data["data_dir"])
        if "app_url" in data:
            self.app_url = str(data["app_url"])
        if "email_enabled" in data:
            self.email_enabled = _parse_bool(data["email_enabled"])

        if "logging" in data and "level" in data["logging"]:
            self.log_level = _parse_log_level(data["logging"]["level"], self.log_level)

        if "llm" in data:
            self.llm = LLMSettings.from_toml_dict(data["llm"], self.llm)
        if "circuit_breaker" in data:
            self.circuit_breaker = CircuitBreakerSettings.from_toml_dict(
                data["circuit_breaker"], self.circuit_breaker
            )
        if "retry_queue" in data:
            self.retry_queue = RetryQueueSettings.from_toml_dict(data["retry_queue"], self.retry_queue)

    def _load_env(self) -> None:
        if data_dir := _env("DATA_DIR"):
            self.data_dir = Path(data_dir)
        if level := _env("LOG_LEVEL"):
            self.log_level = _parse_log_level(level, self.log_level)
        if app_url := _env("APP_URL"):
            self.app_url = app_url
        if email_enabled := _env("EMAIL_ENABLED"):
            self.email_enabled = _parse_bool(email_enabled)

        # LLM endpoint
        if api_url := _env("LLM_API_URL"):
            self.llm.api_url = api_url
        if api_key := _env("LLM_API_KEY"):
            self.llm.api_key = api_key
        if model := _env("LLM_MODEL"):
            self.llm.model = model
        if timeout := _env("LLM_TIMEOUT_SECONDS"):
            self.llm.timeout_seconds = _parse_number(
                "LLM_TIMEOUT_SECONDS", timeout, float, self.llm.timeout_seconds
            )

        # Circuit breaker
        if threshold := _env("CIRCUIT_FAILURE_THRESHOLD"):
            self.circuit_breaker.failure_threshold = _parse_number(
                "CIRCUIT_FAILURE_THRESHOLD", threshold, int, self.circuit_breaker.failure_threshold
            )
        if reset := _env("CIRCUIT_RESET_TIMEOUT_SECONDS"):
            self.circuit_breaker.reset_timeout_seconds = _parse_number(
                "CIRCUIT_RESET_TIMEOUT_SECONDS", reset, float, self.circuit_breaker.reset_timeout_seconds
            )

        # Retry queue
        if interval := _env("RETRY_POLL_INTERVAL_SECONDS"):
            self.retry_queue.poll_interval_seconds = _parse_number(
                "RETRY_POLL_INTERVAL_SECONDS", interval, float, self.retry_queue.poll_interval_seconds
            )
        if batch := _env("RETRY_BATCH_SIZE"):
            self.retry_queue.batch_size = _parse_number(
                "RETRY_BATCH_SIZE", batch, int, self.retry_queue.batch_size
            )
        if max_retries := _env("RETRY_MAX_RETRIES"):
            self.retry_queue.max_retries = _parse_number(
                "RETRY_MAX_RETRIES", max_retries, int, self.retry_queue.max_retries
            )

    def to_dict(self) -> Dict[str, Any]:
        """Settings view for CLI output; the API key is masked."""
        return {
            "data_dir": str(self.data_dir),
            "log_level": self.log_level,
            "app_url": self.app_url,
            "email_enabled": self.email_enabled,
            "llm": {
                "api_url": self.llm.api_url,
                "api_key": "***" if self.llm.api_key else None,
                "model": self.llm.model,
                "timeout_seconds": self.llm.timeout_seconds,
            },
            "circuit_breaker": {
                "failure_threshold": self.circuit_breaker.failure_threshold,
                "reset_timeout_seconds": self.circuit_breaker.reset_timeout_seconds,
                "failure_window_seconds": self.circuit_breaker.failure_window_seconds,
            },
            "retry_queue": {
                "poll_interval_seconds": self.retry_queue.poll_interval_seconds,
                "batch_size": self.retry_queue.batch_size,
                "max_retries": self.retry_queue.max_retries,
            },
        }
