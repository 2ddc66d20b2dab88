"""Tier-specific resilience configurations.

Maps each tier to a tuned TierErrorConfig and provides a lookup helper.
All durations are in seconds.
"""

from dataclasses import dataclass
from typing import Protocol

from validate_strategy.core.tiers import Tier


@dataclass(frozen=True)
class TierErrorConfig:
    """Per-tier retry, timeout and partial-success tuning."""

    # Retry behavior
    max_retries: int
    base_delay: float
    max_delay: float

    # Bound on a single LLM call
    part_timeout: float

    # Partial success
    expected_parts: int
    min_parts_for_partial_success: int

    @property
    def partial_success_percentage(self) -> float:
        """Completion percentage that counts as a degraded success (inclusive)."""
        return self.min_parts_for_partial_success / self.expected_parts * 100


TIER_ERROR_CONFIGS: dict[Tier, TierErrorConfig] = {
    Tier.STANDARD: TierErrorConfig(
        max_retries=2,
        base_delay=1.0,
        max_delay=10.0,
        part_timeout=60.0,
        expected_parts=1,
        min_parts_for_partial_success=1,
    ),
    Tier.MEDIUM: TierErrorConfig(
        max_retries=3,
        base_delay=1.5,
        max_delay=15.0,
        part_timeout=90.0,
        expected_parts=2,
        min_parts_for_partial_success=1,
    ),
    Tier.FULL: TierErrorConfig(
        max_retries=5,
        base_delay=2.0,
        max_delay=30.0,
        part_timeout=120.0,
        expected_parts=6,
        min_parts_for_partial_success=4,
    ),
}

# Cap applied to the single-shot tier's inline retries
SINGLE_SHOT_MAX_DELAY = 30.0


def get_tier_error_config(tier: Tier) -> TierErrorConfig:
    """Get resilience configuration for a tier."""
    return TIER_ERROR_CONFIGS[Tier(tier)]


class SleepFunc(Protocol):
    """Protocol for injectable sleep function."""

    async def __call__(self, seconds: float) -> None: ...
