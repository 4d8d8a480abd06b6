"""
Pitboss — Fix Knowledge Types

Records of what was tried against which issue, and what was learned.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field

from pitboss.primitives.common import PitbossBaseModel


class FixResult(enum.StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class FixAttempt(PitbossBaseModel):
    """One remediation attempt. Written once, never changed."""

    model_config = {"frozen": True}

    id: str
    issue_id: str
    issue_type: str
    fix_method: str
    fix_details: dict[str, Any] = Field(default_factory=dict)
    result: FixResult
    timestamp: int                    # Epoch ms
    state_snapshot: Any = None        # The game subtree at the time of the attempt
    duration: float = 0.0


class MethodStats(PitbossBaseModel):
    """Lifetime outcome counts for a fix method across every issue."""

    successes: int = 0
    failures: int = 0
    partials: int = 0
    rate: float = 0.0

    @property
    def attempts(self) -> int:
        return self.successes + self.failures + self.partials

    def record(self, result: FixResult) -> None:
        if result == FixResult.SUCCESS:
            self.successes += 1
        elif result == FixResult.FAILURE:
            self.failures += 1
        else:
            self.partials += 1
        decided = self.successes + self.failures
        self.rate = self.successes / decided if decided else 0.0


class MethodAlternative(PitbossBaseModel):
    """A method's record against one issue pattern."""

    method: str
    successes: int = 0
    failures: int = 0
    attempts: int = 0
    success_rate: float = 0.0
    last_success: int | None = None


class KnowledgeEntry(PitbossBaseModel):
    """What is known about fixing one issue pattern."""

    pattern: str
    best_method: str | None = None
    success_rate: float = 0.0
    alternatives: list[MethodAlternative] = Field(default_factory=list)
    attempts: int = 0


class OutcomeRecord(PitbossBaseModel):
    """Running count of one outcome for an (issue, method) pair."""

    issue_id: str
    method: str
    count: int = 0
    first_attempt: int = 0
    last_attempt: int = 0
    # Kept so similarity can be judged after the issue itself is gone
    issue_type: str = ""
    issue_details: dict[str, Any] = Field(default_factory=dict)


class FixSuggestion(PitbossBaseModel):
    method: str
    confidence: float
    reason: str
    success_rate: float


class AvoidedFix(PitbossBaseModel):
    method: str
    reason: str
    count: int
    last_attempt: int


class SuggestedFixes(PitbossBaseModel):
    should_try: list[FixSuggestion] = Field(default_factory=list)
    should_not_try: list[AvoidedFix] = Field(default_factory=list)
    confidence: float = 0.0


class FailedFixSummary(PitbossBaseModel):
    method: str
    count: int
    issues: list[str] = Field(default_factory=list)
    last_attempt: int = 0
