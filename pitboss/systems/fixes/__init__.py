"""
Pitboss — Fix Knowledge

Every fix attempt, what it taught, and what to try next.
"""

from pitboss.systems.fixes.knowledge import (
    FixKnowledgeBase,
    pattern_key,
    recompute_method_stats,
)
from pitboss.systems.fixes.types import (
    AvoidedFix,
    FailedFixSummary,
    FixAttempt,
    FixResult,
    FixSuggestion,
    KnowledgeEntry,
    MethodAlternative,
    MethodStats,
    OutcomeRecord,
    SuggestedFixes,
)

__all__ = [
    "AvoidedFix",
    "FailedFixSummary",
    "FixAttempt",
    "FixKnowledgeBase",
    "FixResult",
    "FixSuggestion",
    "KnowledgeEntry",
    "MethodAlternative",
    "MethodStats",
    "OutcomeRecord",
    "SuggestedFixes",
    "pattern_key",
    "recompute_method_stats",
]
