"""
Pitboss — Issue & State-Change Primitives

The records every system shares: the anomaly being chased (Issue), the raw
state mutations it might be explained by (StateChange), and the causal
annotations written back onto an issue once it has been traced.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field

from pitboss.primitives.common import PitbossBaseModel


class IssueSeverity(enum.StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Priority weight of each severity when ranking active issues
SEVERITY_WEIGHTS: dict[IssueSeverity, float] = {
    IssueSeverity.CRITICAL: 10.0,
    IssueSeverity.HIGH: 7.0,
    IssueSeverity.MEDIUM: 4.0,
    IssueSeverity.LOW: 1.0,
}


class Relationship(enum.StrEnum):
    """How a state change relates to the issue it was traced from."""

    DIRECT = "direct"          # Exact path match
    DEPENDENCY = "dependency"  # Reached through the dependency graph
    INDIRECT = "indirect"      # Component, table or player match


class StateChange(PitbossBaseModel):
    """A single recorded mutation of the monitored application's state."""

    model_config = {"frozen": True}

    timestamp: int                   # Epoch ms
    path: str                        # Dotted path, e.g. "game.tables.t1.pot"
    old_value: Any = None
    new_value: Any = None
    trigger: str = "unknown"

    @property
    def component(self) -> str:
        """Top-level path segment."""
        return self.path.split(".", 1)[0]


class CausalLink(PitbossBaseModel):
    """One state change inside an issue's causal chain."""

    timestamp: int
    path: str
    old_value: Any = None
    new_value: Any = None
    trigger: str = "unknown"
    relationship: Relationship

    @classmethod
    def from_change(cls, change: StateChange, relationship: Relationship) -> CausalLink:
        return cls(
            timestamp=change.timestamp,
            path=change.path,
            old_value=change.old_value,
            new_value=change.new_value,
            trigger=change.trigger,
            relationship=relationship,
        )


class RootCause(PitbossBaseModel):
    """The earliest plausible state change behind an issue."""

    type: str = "state_change"
    path: str
    timestamp: int
    value: Any = None
    trigger: str = "unknown"
    # Links in the chain plus one per dependency hop walked
    chain_length: int = 0
    hops: int = 0


class Issue(PitbossBaseModel):
    """
    A detected anomaly in the monitored application.

    Created by the issue registry. The causal analyzer writes root_cause and
    causal_chain back onto it; everyone else reads.
    """

    id: str
    type: str
    severity: IssueSeverity = IssueSeverity.MEDIUM
    details: dict[str, Any] = Field(default_factory=dict)
    first_seen: int = 0              # Epoch ms
    last_seen: int = 0
    count: int = 1
    priority: float = 0.0
    root_cause: RootCause | None = None
    causal_chain: list[CausalLink] | None = None

    @property
    def component(self) -> str | None:
        return self.details.get("component")

    @property
    def table_id(self) -> str | None:
        value = self.details.get("tableId")
        return str(value) if value is not None else None

    @property
    def player_id(self) -> str | None:
        value = self.details.get("playerId")
        return str(value) if value is not None else None

    @property
    def phase(self) -> str | None:
        value = self.details.get("phase")
        return str(value) if value is not None else None


def compute_priority(severity: IssueSeverity, count: int) -> float:
    """Severity weight plus up to five points for recurrence."""
    return SEVERITY_WEIGHTS.get(severity, 1.0) + min(count / 10, 1.0) * 5
