"""Report generation: single-shot and sequential multi-part.

Every LLM call goes through the shared circuit breaker and is bounded by
the tier's per-part timeout.  Multi-part runs pass a condensed handoff
between parts instead of the full conversation and stop at part
boundaries when the caller says so.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Sequence

from validate_strategy.core.analysis.handoff import (
    accumulate_handoff,
    assemble_full_markdown,
    build_part_messages,
    extract_state_handoff,
)
from validate_strategy.core.analysis.llm import LLMInvoker, LLMMessage
from validate_strategy.core.analysis.models import ResumeConfig
from validate_strategy.core.analysis.prompts import get_tier_prompt_config
from validate_strategy.core.errors import AnalysisTimeoutError
from validate_strategy.core.resilience import CircuitBreaker, get_tier_error_config, guarded_call
from validate_strategy.core.security import sanitize_input
from validate_strategy.core.tiers import Tier

logger = logging.getLogger(__name__)

PartStartCallback = Callable[[int], Awaitable[None]]
PartCompleteCallback = Callable[[int, str, str, int], Awaitable[None]]
ContinueCheck = Callable[[int], Awaitable[bool]]


@dataclass
class MultiPartResult:
    """Outcome of a multi-part run.

    Attributes:
        parts: Content of every completed part (including resumed ones).
        handoff_state: Accumulated handoff after the last completed part.
        full_markdown: Assembled report; empty when the run was stopped.
        stopped_before_part: Part the run stopped at on a cancel/pause
            check, or None if it ran to the end.
    """

    parts: Dict[int, str] = field(default_factory=dict)
    handoff_state: str = ""
    full_markdown: str = ""
    stopped_before_part: Optional[int] = None

    @property
    def stopped(self) -> bool:
        return self.stopped_before_part is not None


class AnalysisGenerator:
    """Drives LLM calls for one tier's prompt set.

    Args:
        llm: Anything with ``async invoke(messages) -> str``.
        breaker: Shared circuit breaker for the LLM dependency.
    """

    def __init__(self, llm: LLMInvoker, breaker: CircuitBreaker):
        self.llm = llm
        self.breaker = breaker

    async def _call(self, messages: Sequence[LLMMessage], tier: Tier, part_number: int, session_id: str) -> str:
        timeout = get_tier_error_config(tier).part_timeout

        async def invoke() -> str:
            try:
                return await asyncio.wait_for(self.llm.invoke(messages), timeout=timeout)
            except asyncio.TimeoutError:
                raise AnalysisTimeoutError(
                    f"generate part {part_number}",
                    int(timeout * 1000),
                    {"session_id": session_id, "tier": tier.value, "part_number": part_number},
                ) from None

        return await guarded_call(
            self.breaker, invoke, session_id=session_id, tier=tier.value, part_number=part_number
        )

    async def generate_single(self, problem: str, tier: Tier = Tier.STANDARD, session_id: str = "") -> str:
        """One call with the tier's initial prompt."""
        tier = Tier(tier)
        config = get_tier_prompt_config(tier)
        sanitized, _ = sanitize_input(problem)
        messages = build_part_messages(config, sanitized, 1)
        content = await self._call(messages, tier, 1, session_id)
        logger.info("Generated single-part %s analysis for %s (%d chars)", tier.value, session_id, len(content))
        return content

    async def generate_multi_part(
        self,
        problem: str,
        tier: Tier,
        *,
        session_id: str = "",
        resume: Optional[ResumeConfig] = None,
        on_part_start: Optional[PartStartCallback] = None,
        on_part_complete: Optional[PartCompleteCallback] = None,
        should_continue: Optional[ContinueCheck] = None,
    ) -> MultiPartResult:
        """Generate parts sequentially from ``resume.resume_from_part``.

        ``on_part_complete`` receives (part number, content, accumulated
        handoff, duration in ms) and is awaited before the next part
        starts.  ``should_continue`` is checked before every part; a False
        result stops the run without error.

        Raises:
            AnalysisError: Classified failure of the part being generated.
        """
        tier = Tier(tier)
        config = get_tier_prompt_config(tier)
        resume = resume or ResumeConfig()
        sanitized, _ = sanitize_input(problem)

        result = MultiPartResult(
            parts={n: c for n, c in resume.previous_parts.items() if n < resume.resume_from_part},
            handoff_state=resume.initial_handoff_state,
        )
        if resume.resume_from_part > 1:
            logger.info(
                "Resuming %s analysis for %s from part %d", tier.value, session_id, resume.resume_from_part
            )

        for part_number in range(resume.resume_from_part, config.parts + 1):
            if should_continue is not None and not await should_continue(part_number):
                result.stopped_before_part = part_number
                logger.info("Run for %s stopped before part %d", session_id, part_number)
                return result

            if on_part_start is not None:
                await on_part_start(part_number)

            messages = build_part_messages(config, sanitized, part_number, result.handoff_state)
            started = time.monotonic()
            content = await self._call(messages, tier, part_number, session_id)
            duration_ms = int((time.monotonic() - started) * 1000)

            result.parts[part_number] = content
            if part_number < config.parts:
                result.handoff_state = accumulate_handoff(
                    result.handoff_state, extract_state_handoff(content, part_number)
                )
                logger.debug("Accumulated handoff size: %d chars", len(result.handoff_state))

            if on_part_complete is not None:
                await on_part_complete(part_number, content, result.handoff_state, duration_ms)
            logger.info(
                "Completed %s part %d/%d for %s (%d chars)",
                tier.value,
                part_number,
                config.parts,
                session_id,
                len(content),
            )

        result.full_markdown = assemble_full_markdown(tier, result.parts)
        return result

