"""
Pitboss — Decision Types
"""

from __future__ import annotations

import enum

from pydantic import Field

from pitboss.primitives.common import PitbossBaseModel
from pitboss.primitives.issue import Issue
from pitboss.systems.fixes.types import AvoidedFix, FixSuggestion


class InvestigationStatus(enum.StrEnum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    COMPLETED = "completed"


class AppStatus(enum.StrEnum):
    RUNNING = "running"
    PAUSED = "paused"


class RecommendedAction(enum.StrEnum):
    INVESTIGATE_AND_FIX = "investigate_and_fix"
    INVESTIGATE = "investigate"
    MONITOR = "monitor"


# ─── Decisions ────────────────────────────────────────────────────


class Decision(PitbossBaseModel):
    """Answer to one yes/no question, with how sure the policy is."""

    should: bool
    reason: str
    confidence: float = 0.0
    priority: str | None = None
    issue_ids: list[str] = Field(default_factory=list)


class FixPlan(PitbossBaseModel):
    """What to try, and what not to, for one active issue."""

    issue_id: str
    issue_type: str
    priority: float = 0.0
    suggestions: list[FixSuggestion] = Field(default_factory=list)
    avoid: list[AvoidedFix] = Field(default_factory=list)
    confidence: float = 0.0


class AvoidEntry(PitbossBaseModel):
    method: str
    reason: str
    issue_ids: list[str] = Field(default_factory=list)


class PriorityAssessment(PitbossBaseModel):
    priority: str                      # "critical" | "high" | "medium" | "low"
    action: RecommendedAction
    reason: str
    issue_ids: list[str] = Field(default_factory=list)


class DecisionSet(PitbossBaseModel):
    investigation: Decision
    pause: Decision
    resume: Decision
    fixes: list[FixPlan] = Field(default_factory=list)
    avoid: list[AvoidEntry] = Field(default_factory=list)
    priority: PriorityAssessment
    timestamp: int = 0


# ─── Investigation State ──────────────────────────────────────────


class InvestigationRecord(PitbossBaseModel):
    start_time: int
    completed_at: int
    duration_s: float
    issues_found: int


class InvestigationState(PitbossBaseModel):
    """
    Shape of "monitoring.investigation" in the state store.

    Only the decision engine writes it; progress and time_remaining are
    written by its scheduler task alone.
    """

    status: InvestigationStatus = InvestigationStatus.IDLE
    start_time: int | None = None
    timeout_s: float | None = None
    issue_ids: list[str] = Field(default_factory=list)
    progress: float = 0.0
    time_remaining_s: float | None = None
    history: list[InvestigationRecord] = Field(default_factory=list)

    @property
    def last_completed_at(self) -> int | None:
        return self.history[-1].completed_at if self.history else None


def issue_ids(issues: list[Issue]) -> list[str]:
    return [issue.id for issue in issues]
