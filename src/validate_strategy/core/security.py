"""
Input hygiene for user-supplied problem statements.

Problem statements are pasted into LLM prompts verbatim, so they are screened
for prompt injection attempts and have prompt delimiters neutralised first.
"""

import logging
import re
from typing import Final, List, Tuple

logger = logging.getLogger(__name__)

# =============================================================================
# Input Size Limits
# =============================================================================

MAX_PROBLEM_STATEMENT_LENGTH: Final[int] = 10_000
"""Maximum length of a problem statement (characters).

Longer statements are truncated before prompting so a single session cannot
consume the whole context window.
"""

# =============================================================================
# Prompt Injection Detection Patterns
# =============================================================================

INJECTION_PATTERNS: Final[list[str]] = [
    # Instruction override attempts
    r"ignore\s+(all\s+)?(previous|above|prior)\s+(instructions?|rules?|prompts?)",
    r"disregard\s+(all\s+)?(previous|above|prior)",
    r"forget\s+(everything|all|your)\s+(instructions?|rules?|training)",

    # Persona hijacking
    r"you\s+are\s+(now|actually|really)\s+(?!analyzing|helping)",
    r"act\s+as\s+(?!a\s+helpful)",
    r"pretend\s+(to\s+be|you('re)?)",
    r"roleplay\s+as",
    r"switch\s+to\s+.*\s+mode",

    # Prompt extraction
    r"what\s+(are|is)\s+your\s+(system\s+)?prompt",
    r"show\s+(me\s+)?your\s+(instructions?|prompt|rules)",
    r"reveal\s+(your\s+)?(hidden\s+)?instructions?",

    # Jailbreak modes
    r"DAN\s*mode",
    r"developer\s+mode",
    r"sudo\s+mode",
    r"\[JAILBREAK\]",
    r"bypass\s+(safety|filter|restriction)",

    # Markup injection
    r"<script[\s>]",
]
"""Regex patterns (case-insensitive) for prompt injection attempts.

A match is logged but does not block generation; the text is still
sanitized with :func:`sanitize_input`.
"""

_COMPILED_PATTERNS = [re.compile(p, re.IGNORECASE) for p in INJECTION_PATTERNS]

_DELIMITER_TRANSLATION = str.maketrans({"<": "＜", ">": "＞", "[": "［", "]": "］"})

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def detect_prompt_injection(text: str) -> List[str]:
    """Return the patterns in INJECTION_PATTERNS that match ``text``."""
    return [pattern.pattern for pattern in _COMPILED_PATTERNS if pattern.search(text)]


def sanitize_input(text: str) -> Tuple[str, List[str]]:
    """Neutralise prompt delimiters and strip control characters.

    Angle and square brackets become their full-width equivalents so user
    text cannot open markup or role tags inside the prompt.

    Returns:
        Tuple of (sanitized text, matched injection patterns).
    """
    flags = detect_prompt_injection(text)
    sanitized = _CONTROL_CHARS.sub("", text.translate(_DELIMITER_TRANSLATION))
    if len(sanitized) > MAX_PROBLEM_STATEMENT_LENGTH:
        sanitized = sanitized[:MAX_PROBLEM_STATEMENT_LENGTH]
    if flags:
        logger.warning("Potential prompt injection detected (%d patterns matched)", len(flags))
    return sanitized, flags


__all__ = [
    "MAX_PROBLEM_STATEMENT_LENGTH",
    "INJECTION_PATTERNS",
    "detect_prompt_injection",
    "sanitize_input",
]
