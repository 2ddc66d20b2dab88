"""
Tier prompt templates for analysis generation.

This module provides the prompt set for each tier:

1. **Observer** (standard): single-part sanity check, no continue prompt
2. **Insider** (medium): two-part strategic blueprint
3. **Syndicate** (full): six-part APEX analysis; continue prompts embed the
   key findings carried over from earlier parts

Use :func:`get_tier_prompt_config` to obtain a ``TierPromptConfig``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from validate_strategy.core.tiers import TIER_PARTS, Tier, parse_tier

_RULE = "=" * 67


def _banner(title: str) -> str:
    return f"{_RULE}\n{title}\n{_RULE}"


# =============================================================================
# Part Titles (used for report assembly)
# =============================================================================

PART_TITLES: Dict[Tier, List[str]] = {
    Tier.STANDARD: ["Quick Sanity Check"],
    Tier.MEDIUM: [
        "Discovery & Problem Analysis",
        "Strategic Design & Roadmap",
    ],
    Tier.FULL: [
        "Discovery & Problem Analysis",
        "Competitor Deep-Dive",
        "Strategic Roadmap",
        "5 Core Design Prompts",
        "5 Advanced Design Prompts + Edge Cases",
        "Risk, Metrics & Strategic Rationale",
    ],
}


def get_part_title(tier: Tier, part_number: int) -> str:
    titles = PART_TITLES[Tier(tier)]
    if 1 <= part_number <= len(titles):
        return titles[part_number - 1]
    return f"Part {part_number}"


_CONTEXT_DETECTION = """ADAPTIVE CONTEXT (silently detect and adapt to):
- Industry: fintech/web3, healthcare, e-commerce, SaaS/B2B, marketplace, internal tools
- Persona: solo founder, design lead, product manager, enterprise team, crypto native
Adjust compliance depth, trust signals and pacing to what you detect."""


# =============================================================================
# Observer Tier (1 part)
# =============================================================================

OBSERVER_SYSTEM_PROMPT = """You are an experienced UX strategist giving early-stage founders a fast sanity check on a product idea.
Deliver a focused viability assessment that helps the founder decide whether the idea deserves more time.

Principles:
- Speed over perfection: this is a sanity check, not a full strategy
- Clear viability signals beat exhaustive analysis
- End with one concrete next step to validate the idea
- Be honest when the idea has problems

Out of scope for this tier: competitor analysis, roadmaps, design prompts, risk matrices
and a Go/No-Go verdict. Cover only problem clarity, the top 3 pain points, a viability
score and one next step."""


def get_observer_prompt(problem: str) -> str:
    return f"""{_banner("QUICK SANITY CHECK - OBSERVER TIER")}

USER PROBLEM/IDEA:
{problem}

This is a single-part assessment of roughly 3,000 tokens.

{_CONTEXT_DETECTION}

DELIVERABLES (in this order):

## Problem Statement Analysis
3-4 sentences: what problem is being solved and who feels it most.

## Top 3 Pain Points
For each: the pain, who has it, and how it shows up today.

## Viability Score
A score out of 10 with a one-paragraph justification.

## One Next Step
A single validation experiment the founder can run this week.

End with: `[✅ OBSERVER ANALYSIS COMPLETE]`"""


# =============================================================================
# Insider Tier (2 parts)
# =============================================================================

INSIDER_SYSTEM_PROMPT = """You are an elite UX strategist with 15+ years across complex, data-heavy products.
Produce a strategic blueprint in two parts: discovery first, then design direction and roadmap.

Principles:
- Balance user needs against business goals and flag conflicts explicitly
- Prefer clarity and task efficiency over visual flourish
- Back every recommendation with a testable hypothesis
- Mark each claim as VERIFIED (with source), BEST PRACTICE or ASSUMPTION"""

INSIDER_PART_SCOPES: Dict[int, str] = {
    1: """### PART 1 OF 2: DISCOVERY & PROBLEM ANALYSIS

## Executive Summary
3-4 sentences on the core problem, approach and expected outcome.

## Problem Analysis
Task type, user base, complexity level and the primary job-to-be-done.

## Competitor Snapshot
3-5 live competitors with their positioning and the gap they leave open.

## Key Findings Summary
Five bullet points the next part must build on.

End with: `[✅ PART 1 COMPLETE]`""",
    2: """### PART 2 OF 2: STRATEGIC DESIGN & ROADMAP

Build on the Part 1 findings without repeating them.

## Design Methodology
Which methods fit the complexity level from Part 1, and why.

## Week-by-Week Roadmap
Milestones, owners' deliverables and success criteria per week.

## Go/No-Go Recommendation
A definitive call with the three signals that would change it.

End with: `[✅ PART 2 COMPLETE - Strategic Blueprint delivered across 2 parts.]`""",
}


def get_insider_initial_prompt(problem: str) -> str:
    return f"""{_banner("STRATEGIC BLUEPRINT ANALYSIS - INSIDER TIER (Part 1 of 2)")}

USER PROBLEM/IDEA:
{problem}

{_CONTEXT_DETECTION}

{INSIDER_PART_SCOPES[1]}"""


def get_insider_continue_prompt(part_number: int, previous_summary: str = "") -> str:
    summary = f"\nKEY FINDINGS FROM PART 1:\n{previous_summary}\n" if previous_summary else ""
    return f"""{_banner(f"STRATEGIC BLUEPRINT ANALYSIS - INSIDER TIER (Part {part_number} of 2)")}

Continue the analysis, building on Part 1's insights.
{summary}
{INSIDER_PART_SCOPES[part_number]}"""


# =============================================================================
# Syndicate Tier (6 parts)
# =============================================================================

SYNDICATE_SYSTEM_PROMPT = """You are an elite UX strategist with 15+ years across finance, SaaS, enterprise, web3, healthcare and internal tools.
Generate a complete, execution-ready UX solution plan across six parts that adapts to the scope and constraints of the problem.

Keep context across all six parts: each part builds on earlier insights while staying focused on its own deliverables.

Principles:
- Every decision balances user needs against business goals
- Flag ⚠️ Business Risk or ⚠️ User Friction where they arise, with a mitigation
- For regulated or financial products, prioritise trust, error prevention and auditability
- Every critical decision states user impact, business impact and technical feasibility
- Classify sources as VERIFIED (URL and date), BEST PRACTICE or ASSUMPTION (with confidence)
- No placeholders: write production-ready microcopy

At the end of every part except the last, emit a fenced block starting with
```json
// STATE_HANDOFF_PART_<n>
holding the findings later parts depend on."""

SYNDICATE_PART_SCOPES: Dict[int, str] = {
    1: """### PART 1 OF 6: DISCOVERY & PROBLEM ANALYSIS

## Executive Summary
## Adaptive Problem Analysis
Task type, user base, complexity, regulatory exposure.
## Pain Points
At least five, each numbered so later parts can reference them.
## Unit Economics
Industry-specific cost and revenue assumptions.
## Pre-Mortem
"Why it will fail": three specific risks.
## Key Findings Summary

End with: `[✅ PART 1 COMPLETE - Discovery & Problem Analysis]`""",
    2: """### PART 2 OF 6: COMPETITOR DEEP-DIVE

## Competitor Matrix
5+ competitors: positioning, pricing, UX strengths and weaknesses.
## War Room Simulation
How each major competitor would respond to this product.
## Differentiation Opportunities
## Competitor Intelligence Summary

End with: `[✅ PART 2 COMPLETE - Competitor Deep-Dive]`""",
    3: """### PART 3 OF 6: STRATEGIC ROADMAP

## Phase 0: Fake Door Validation
Demand validation before any build.
## Phased Roadmap
Phases with features, milestones and exit criteria.
## Success Metrics per Phase
## Roadmap Summary

End with: `[✅ PART 3 COMPLETE - Strategic Roadmap]`""",
    4: """### PART 4 OF 6: 5 CORE DESIGN PROMPTS

Write five production-ready design prompts for the core screens. Each prompt states:
- Goal: the job-to-be-done it solves, referencing a Pain Point from Part 1
- Layout and components
- Microcopy (headline, body, CTA)
- Accessibility and empty/error states

End with: `[✅ PART 4 COMPLETE - 5 Core Design Prompts]`""",
    5: """### PART 5 OF 6: 5 ADVANCED DESIGN PROMPTS + EDGE CASES

Use the same prompt structure as Part 4 for five advanced flows, then list edge cases:
offline, partial data, permission errors, slow networks and abuse scenarios.

End with: `[✅ PART 5 COMPLETE - Advanced Design Prompts + Edge Cases]`""",
    6: """### PART 6 OF 6: RISK, METRICS & STRATEGIC RATIONALE

## Risk Matrix
Likelihood, impact and mitigation for each risk.
## Assumption Validation Plan
For each major assumption from Part 1: the test, the threshold and the fallback.
## North Star and Guardrail Metrics
## Strategic Rationale

End with:
`[✅ PART 6 COMPLETE - Risk, Metrics & Strategic Rationale]`

`[✅✅✅ FULL APEX ANALYSIS COMPLETE ✅✅✅]`""",
}


def get_syndicate_initial_prompt(problem: str) -> str:
    return f"""{_banner("APEX STRATEGIC ANALYSIS - SYNDICATE TIER (Part 1 of 6)")}

USER PROBLEM/IDEA:
{problem}

{_CONTEXT_DETECTION}

{SYNDICATE_PART_SCOPES[1]}"""


def get_syndicate_continue_prompt(part_number: int, previous_summary: str) -> str:
    return f"""{_banner(f"APEX STRATEGIC ANALYSIS - SYNDICATE TIER (Part {part_number} of 6)")}

KEY FINDINGS FROM PREVIOUS PARTS:
{previous_summary}

{_RULE}
{SYNDICATE_PART_SCOPES[part_number]}"""


# =============================================================================
# Tier Lookup
# =============================================================================


@dataclass(frozen=True)
class TierPromptConfig:
    """Prompt set for one tier.

    Attributes:
        system_prompt: System message sent with every part.
        parts: Number of sequential parts.
        get_initial_prompt: Builds the part 1 prompt from the problem statement.
        get_continue_prompt: Builds the prompt for part N (N > 1) from a summary
            of earlier parts; None for single-part tiers.
    """

    system_prompt: str
    parts: int
    get_initial_prompt: Callable[[str], str]
    get_continue_prompt: Optional[Callable[[int, str], str]] = None


_TIER_PROMPTS: Dict[Tier, TierPromptConfig] = {
    Tier.STANDARD: TierPromptConfig(
        system_prompt=OBSERVER_SYSTEM_PROMPT,
        parts=TIER_PARTS[Tier.STANDARD],
        get_initial_prompt=get_observer_prompt,
    ),
    Tier.MEDIUM: TierPromptConfig(
        system_prompt=INSIDER_SYSTEM_PROMPT,
        parts=TIER_PARTS[Tier.MEDIUM],
        get_initial_prompt=get_insider_initial_prompt,
        get_continue_prompt=get_insider_continue_prompt,
    ),
    Tier.FULL: TierPromptConfig(
        system_prompt=SYNDICATE_SYSTEM_PROMPT,
        parts=TIER_PARTS[Tier.FULL],
        get_initial_prompt=get_syndicate_initial_prompt,
        get_continue_prompt=get_syndicate_continue_prompt,
    ),
}


def get_tier_prompt_config(tier: str | Tier) -> TierPromptConfig:
    """Get the prompt set for ``tier``.

    Raises:
        ApiError: VALIDATION_TIER_INVALID if the tier is unknown.
    """
    return _TIER_PROMPTS[parse_tier(tier)]
