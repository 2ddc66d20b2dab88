"""Parsing helpers for configuration values read from TOML or the environment."""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


def _parse_number(name: str, value: Any, kind: type, default: Any) -> Any:
    """Coerce ``value`` with ``kind``; log and keep ``default`` on bad input."""
    try:
        return kind(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %r (keeping %r)", name, value, default)
        return default


def _parse_log_level(value: Optional[str], default: str = "INFO") -> str:
    if not value:
        return default
    level = str(value).strip().upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        logger.warning("Unknown log level '%s'. Falling back to %s", value, default)
        return default
    return level
