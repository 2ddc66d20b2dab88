"""Pricing tiers and their fixed report shapes."""

from __future__ import annotations

from enum import Enum
from typing import Dict

from validate_strategy.core.errors import AnalysisErrorCode, ApiError


class Tier(str, Enum):
    """Purchased service level."""

    STANDARD = "standard"
    MEDIUM = "medium"
    FULL = "full"


TIER_DISPLAY_NAMES: Dict[Tier, str] = {
    Tier.STANDARD: "Observer",
    Tier.MEDIUM: "Insider",
    Tier.FULL: "Syndicate",
}

# Number of sequential LLM parts per tier
TIER_PARTS: Dict[Tier, int] = {
    Tier.STANDARD: 1,
    Tier.MEDIUM: 2,
    Tier.FULL: 6,
}

TOKENS_PER_PART: Dict[Tier, int] = {
    Tier.STANDARD: 3000,
    Tier.MEDIUM: 5000,
    Tier.FULL: 6000,
}

# Used for estimated_completion_at on new operations
ESTIMATED_PART_DURATION_SECONDS: Dict[Tier, float] = {
    Tier.STANDARD: 30.0,
    Tier.MEDIUM: 45.0,
    Tier.FULL: 60.0,
}

MAX_PARTS = max(TIER_PARTS.values())


def parse_tier(value: str | Tier) -> Tier:
    """Coerce a tier name, raising a classified validation error if unknown."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        raise ApiError(
            AnalysisErrorCode.VALIDATION_TIER_INVALID,
            f"Unknown tier: {value}",
            {"tier": value},
        ) from None


def is_multi_part(tier: Tier) -> bool:
    return TIER_PARTS[tier] > 1
