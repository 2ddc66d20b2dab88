"""In-memory accumulation of part output for a single analysis run."""

from __future__ import annotations

import logging
from typing import Dict, List

from validate_strategy.core.analysis.prompts import get_part_title
from validate_strategy.core.tiers import TIER_DISPLAY_NAMES, Tier

logger = logging.getLogger(__name__)

PARTIAL_REPORT_NOTE = (
    "> ⚠️ **Partial report.** {completed} of {total} parts were generated. "
    "Missing sections: {missing}. They have been logged for follow-up."
)


class PartialResultsManager:
    """Holds completed part content for one run.

    Parts are keyed by number (1-based).  Snapshots are persisted part by
    part by the orchestrator; this object is discarded at the end of a run.
    """

    def __init__(self, session_id: str, tier: Tier, total_parts: int):
        if total_parts < 1:
            raise ValueError("total_parts must be at least 1")
        self.session_id = session_id
        self.tier = Tier(tier)
        self.total_parts = total_parts
        self._parts: Dict[int, str] = {}

    def mark_part_complete(self, part_number: int, content: str) -> None:
        if not 1 <= part_number <= self.total_parts:
            raise ValueError(
                f"part_number {part_number} outside 1..{self.total_parts} for session {self.session_id}"
            )
        self._parts[part_number] = content
        logger.debug(
            "Session %s part %d/%d recorded (%d chars)",
            self.session_id,
            part_number,
            self.total_parts,
            len(content),
        )

    def get_completed_parts(self) -> List[int]:
        return sorted(self._parts)

    def get_missing_parts(self) -> List[int]:
        return [n for n in range(1, self.total_parts + 1) if n not in self._parts]

    def get_part_contents(self) -> Dict[int, str]:
        return {n: self._parts[n] for n in sorted(self._parts)}

    def get_completion_percentage(self) -> float:
        return len(self._parts) / self.total_parts * 100

    def is_complete(self) -> bool:
        return len(self._parts) == self.total_parts

    def generate_partial_markdown(self) -> str:
        """Completed parts in ascending order, followed by a partial-report note.

        Missing parts are omitted rather than replaced with placeholders.
        """
        lines = [f"# {TIER_DISPLAY_NAMES[self.tier]} Analysis (Partial)", ""]
        for number in self.get_completed_parts():
            lines.append(f"## Part {number}: {get_part_title(self.tier, number)}")
            lines.append("")
            lines.append(self._parts[number])
            lines.append("")
            lines.append("---")
            lines.append("")

        missing = self.get_missing_parts()
        if missing:
            lines.append(
                PARTIAL_REPORT_NOTE.format(
                    completed=len(self._parts),
                    total=self.total_parts,
                    missing=", ".join(f"Part {n}" for n in missing),
                )
            )
        return "\n".join(lines).rstrip() + "\n"
