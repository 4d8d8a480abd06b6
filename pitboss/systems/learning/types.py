"""
Pitboss — Learning Types

Pattern statistics, confidence snapshots, and the signals the learning
engine raises when its own numbers look too good to be true.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field

from pitboss.primitives.common import PitbossBaseModel


class PatternCategory(enum.StrEnum):
    ISSUE_TYPE = "issueType"
    FIX_METHOD = "fixMethod"
    STATE = "state"
    LOG = "log"


class MistakeType(enum.StrEnum):
    GAVE_UP = "gave_up"
    MASKED_PROBLEM = "masked_problem"
    SUPERFICIAL_FIX = "superficial_fix"


# ─── Patterns ─────────────────────────────────────────────────────


class PatternSolution(PitbossBaseModel):
    method: str
    result: str
    timestamp: int


class PatternStats(PitbossBaseModel):
    """
    Outcomes observed for one "{category}:{value}" pattern.

    successes + failures always equals frequency; partial fixes count as
    failures here.
    """

    key: str
    frequency: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: float = 0.0
    contexts: list[dict[str, Any]] = Field(default_factory=list)
    solutions: list[PatternSolution] = Field(default_factory=list)

    def record(
        self,
        success: bool,
        solution: PatternSolution,
        context: dict[str, Any],
        cap: int,
    ) -> None:
        self.frequency += 1
        if success:
            self.successes += 1
        else:
            self.failures += 1
        self.success_rate = self.successes / self.frequency

        self.contexts.append(context)
        self.solutions.append(solution)
        if len(self.contexts) > cap:
            self.contexts = self.contexts[-cap:]
        if len(self.solutions) > cap:
            self.solutions = self.solutions[-cap:]


class PatternAssessment(PitbossBaseModel):
    """A scorer's verdict on one pattern (or solution record)."""

    quality: float
    flag: str | None = None


# ─── Derived Knowledge ────────────────────────────────────────────


class ChainLink(PitbossBaseModel):
    """One step in the learning engine's picture of how a fix came about."""

    kind: str                          # "fix" | "state_change" | "related_issue"
    timestamp: int
    issue_type: str | None = None
    fix: str | None = None
    result: str | None = None
    path: str | None = None
    relationship: str | None = None


class SolutionAlternative(PitbossBaseModel):
    method: str
    success_rate: float
    last_used: int


class SolutionOptimization(PitbossBaseModel):
    issue_type: str
    best_solution: str | None = None
    alternatives: list[SolutionAlternative] = Field(default_factory=list)
    success_rate: float = 0.0
    attempts: int = 0


class RelatedIssueRef(PitbossBaseModel):
    id: str
    type: str


class CrossIssueEntry(PitbossBaseModel):
    key: str
    related_issues: list[RelatedIssueRef] = Field(default_factory=list)
    common_solutions: list[SolutionAlternative] = Field(default_factory=list)
    frequency: int = 0


# ─── Confidence ───────────────────────────────────────────────────


class LearningMetrics(PitbossBaseModel):
    """The six sub-scores, each in [0, 100]."""

    pattern_recognition: float = 0.0
    causal_analysis: float = 0.0
    solution_optimization: float = 0.0
    cross_issue_learning: float = 0.0
    prediction_accuracy: float = 0.0
    data_quality: float = 0.0


class MistakePenalty(PitbossBaseModel):
    reason: str
    amount: float


class ConfidenceSnapshot(PitbossBaseModel):
    model_config = {"frozen": True}

    timestamp: int
    confidence: float
    metrics: LearningMetrics
    masking_detected: bool = False
    penalty: MistakePenalty | None = None


class MaskingWarning(PitbossBaseModel):
    timestamp: int
    source: str
    reason: str
    severity: str = "warning"


class AutoAdjustment(PitbossBaseModel):
    type: str
    action: str
    priority: str                      # "critical" | "high"


class ConfidenceTrend(PitbossBaseModel):
    direction: str = "stable"          # "improving" | "declining" | "stable"
    change: float = 0.0


class ConfidenceReport(PitbossBaseModel):
    overall_confidence: float
    metrics: LearningMetrics
    masking_detected: bool
    masking_warnings: list[MaskingWarning] = Field(default_factory=list)
    auto_adjustments: list[AutoAdjustment] = Field(default_factory=list)
    trend: ConfidenceTrend = Field(default_factory=ConfidenceTrend)
    sample_sizes: dict[str, int] = Field(default_factory=dict)
    timestamp: int = 0


class LearningReport(PitbossBaseModel):
    confidence: ConfidenceReport
    patterns: int
    causal_chains: int
    solutions: int
    cross_issue: int
    mistake_patterns: int
    top_patterns: list[PatternStats] = Field(default_factory=list)


# ─── Mistakes & Test Masking ──────────────────────────────────────


class Mistake(PitbossBaseModel):
    """An admitted or detected shortcut taken by whoever applied a fix."""

    type: str
    details: str = ""
    context: dict[str, Any] = Field(default_factory=dict)


class MistakePattern(PitbossBaseModel):
    pattern: str
    mistakes: list[str] = Field(default_factory=list)
    frequency: int = 0


class MaskingVerdict(PitbossBaseModel):
    is_masking: bool
    indicators: list[str] = Field(default_factory=list)
    severity: str = "none"             # "critical" when masking


class FixQualityReport(PitbossBaseModel):
    score: float
    issues: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class Prediction(PitbossBaseModel):
    pattern: str
    likelihood: float
    reason: str
    type: str                          # "pattern_based" | "state_pattern"
    suggestion: str = ""
