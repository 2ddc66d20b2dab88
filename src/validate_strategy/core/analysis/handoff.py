"""State handoff between parts and final report assembly.

Later parts do not receive the full conversation.  Instead each completed
part is condensed into a STATE_HANDOFF block, the blocks are accumulated,
and the next part's prompt carries only that context plus the problem.
"""

from __future__ import annotations

import re
from typing import Dict, List, Mapping

from validate_strategy.core.analysis.llm import LLMMessage
from validate_strategy.core.analysis.prompts import TierPromptConfig, get_part_title
from validate_strategy.core.tiers import Tier

_EXPLICIT_HANDOFF = re.compile(r"```json\s*//\s*STATE_HANDOFF_PART_\d[\s\S]*?```", re.IGNORECASE)
_SUMMARY_SECTION = re.compile(
    r"## (?:Key Findings Summary|Summary|Roadmap Summary|Competitor Intelligence Summary)"
    r"[\s\S]*?(?=\n## |\n\[✅|$)"
)

SUMMARY_HANDOFF_CHARS = 600
FALLBACK_HANDOFF_CHARS = 400

REPORT_HEADINGS: Dict[Tier, str] = {
    Tier.STANDARD: "# 🎯 Quick Sanity Check",
    Tier.MEDIUM: "# 🔍 Strategic Blueprint Analysis",
    Tier.FULL: "# 🔥 APEX Strategic Analysis - Syndicate Tier",
}


def extract_state_handoff(content: str, part_number: int) -> str:
    """Condense a part's output into a handoff block.

    Preference order: the model's own ``STATE_HANDOFF_PART_N`` JSON block,
    then the first 600 characters of a summary section, then the first
    400 characters of the content.
    """
    match = _EXPLICIT_HANDOFF.search(content)
    if match:
        return match.group(0)

    summary = _SUMMARY_SECTION.search(content)
    if summary:
        return (
            f"// STATE_HANDOFF_PART_{part_number} (auto-extracted from summary)\n"
            f"{summary.group(0)[:SUMMARY_HANDOFF_CHARS]}"
        )

    return (
        f"// STATE_HANDOFF_PART_{part_number} (auto-extracted, no summary found)\n"
        f"{content[:FALLBACK_HANDOFF_CHARS]}..."
    )


def accumulate_handoff(accumulated: str, handoff: str) -> str:
    if not accumulated:
        return handoff
    return f"{accumulated}\n\n{handoff}"


def build_part_messages(
    config: TierPromptConfig,
    problem: str,
    part_number: int,
    accumulated_handoff: str = "",
) -> List[LLMMessage]:
    """Messages for one part: system prompt, prior context, then the part prompt."""
    messages = [LLMMessage.system(config.system_prompt)]

    if part_number == 1:
        messages.append(LLMMessage.user(config.get_initial_prompt(problem)))
        return messages

    if config.get_continue_prompt is None:
        raise ValueError(f"Tier with {config.parts} part(s) has no part {part_number}")

    if accumulated_handoff:
        messages.append(
            LLMMessage.user(
                "CONTEXT FROM PREVIOUS PARTS (STATE_HANDOFF blocks):\n"
                f"{accumulated_handoff}\n\n---\nUSER PROBLEM: {problem}"
            )
        )
    else:
        messages.append(LLMMessage.user(f"USER PROBLEM: {problem}"))
    # Findings already travel in the context message above
    messages.append(LLMMessage.user(config.get_continue_prompt(part_number, "")))
    return messages


def assemble_full_markdown(tier: Tier, parts: Mapping[int, str]) -> str:
    """Join every part under its titled section header.

    Parts are emitted in ascending order; the caller guarantees all parts
    are present for a full report.
    """
    sections = [f"{REPORT_HEADINGS[Tier(tier)]}\n"]
    for number in sorted(parts):
        sections.append("---\n")
        sections.append(f"## Part {number}: {get_part_title(tier, number)}\n")
        sections.append(parts[number])
        sections.append("")
    return "\n".join(sections).rstrip() + "\n"
