"""
Pitboss — Event Types

Every notification that crosses a component boundary travels as a
PitbossEvent. Event type values keep the camelCase names external
consumers (dashboards, prompt generators) already listen for.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field

from pitboss.primitives.common import PitbossBaseModel, new_id, now_ms


class PitbossEventType(enum.StrEnum):
    # Collaborators
    STATE_CHANGED = "stateChanged"
    ISSUE_DETECTED = "issueDetected"

    # Fix knowledge base
    ATTEMPT_RECORDED = "attemptRecorded"
    FIX_SUCCEEDED = "fixSucceeded"
    FIX_FAILED = "fixFailed"
    FIX_SUGGESTION = "fixSuggestion"

    # Causal analyzer
    ROOT_CAUSE_FOUND = "rootCauseFound"

    # Learning engine
    AUTO_ADJUSTMENT = "autoAdjustment"
    AI_MISTAKE_LEARNED = "aiMistakeLearned"

    # Decision policy
    INVESTIGATION_STARTED = "investigationStarted"
    INVESTIGATION_COMPLETED = "investigationCompleted"
    UNITY_PAUSE_REQUESTED = "unityPauseRequested"
    UNITY_RESUME_REQUESTED = "unityResumeRequested"
    FIX_SUGGESTIONS = "fixSuggestions"


class PitbossEvent(PitbossBaseModel):
    """A typed event emitted by any Pitboss component."""

    id: str = Field(default_factory=new_id)
    event_type: PitbossEventType
    timestamp: int = Field(default_factory=now_ms)
    data: dict[str, Any] = Field(default_factory=dict)
    source_system: str = "pitboss"
