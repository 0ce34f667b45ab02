"""Promotion policy: may a validated record reach production unattended?"""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel

from forkcascade.model.record import SyncRecord

BREAKING_SUBJECT = re.compile(r"^\w+(\([^)]*\))?!:", re.MULTILINE)
BREAKING_FOOTER = re.compile(r"^BREAKING[ -]CHANGE:", re.MULTILINE)


def is_breaking(message: str) -> bool:
    """Conventional-commit breaking marker: `type!:`, `type(scope)!:`
    or a `BREAKING CHANGE:` footer."""
    return bool(BREAKING_SUBJECT.search(message) or BREAKING_FOOTER.search(message))


class Decision(StrEnum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class PromotionDecision(BaseModel):
    """Derived per record at promotion time; never persisted."""

    decision: Decision
    rule: str

    @property
    def automatic(self) -> bool:
        return self.decision == Decision.AUTO


class PromotionPolicy:
    """First matching rule wins; any match requires a human."""

    def __init__(self, max_diff_lines: int = 1000):
        self.max_diff_lines = max_diff_lines

    def evaluate(self, record: SyncRecord) -> PromotionDecision:
        lines = record.diff_stats.lines_changed
        if lines >= self.max_diff_lines:
            return PromotionDecision(
                decision=Decision.MANUAL,
                rule=f"size: {lines} lines changed (limit {self.max_diff_lines})",
            )
        if record.breaking_change:
            return PromotionDecision(
                decision=Decision.MANUAL, rule="breaking change marker in history"
            )
        if record.was_conflicted:
            return PromotionDecision(
                decision=Decision.MANUAL, rule="merge conflicts were resolved by hand"
            )
        return PromotionDecision(decision=Decision.AUTO, rule="small, clean, non-breaking")

    def decide(self, record: SyncRecord) -> Decision:
        return self.evaluate(record).decision
