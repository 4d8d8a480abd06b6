"""
Pitboss — Decision

Investigate, pause, resume, and which fixes to try next.
"""

from pitboss.systems.decision.engine import DecisionEngine
from pitboss.systems.decision.types import (
    AppStatus,
    AvoidEntry,
    Decision,
    DecisionSet,
    FixPlan,
    InvestigationRecord,
    InvestigationState,
    InvestigationStatus,
    PriorityAssessment,
    RecommendedAction,
)

__all__ = [
    "AppStatus",
    "AvoidEntry",
    "Decision",
    "DecisionEngine",
    "DecisionSet",
    "FixPlan",
    "InvestigationRecord",
    "InvestigationState",
    "InvestigationStatus",
    "PriorityAssessment",
    "RecommendedAction",
]
