"""
Pitboss — Causal Graph Types

Read-only projection of the causal analyzer's findings, for dashboards
and export.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field

from pitboss.primitives.common import PitbossBaseModel


class GraphNodeKind(enum.StrEnum):
    STATE_CHANGE = "state_change"
    ISSUE = "issue"


class GraphEdgeKind(enum.StrEnum):
    CAUSES = "causes"        # First chain entry → issue
    LEADS_TO = "leads_to"    # Chain entry → next chain entry


class CausalGraphNode(PitbossBaseModel):
    id: str
    kind: GraphNodeKind
    label: str
    timestamp: int = 0
    data: dict[str, Any] = Field(default_factory=dict)


class CausalGraphEdge(PitbossBaseModel):
    source: str
    target: str
    kind: GraphEdgeKind


class CausalGraph(PitbossBaseModel):
    nodes: list[CausalGraphNode] = Field(default_factory=list)
    edges: list[CausalGraphEdge] = Field(default_factory=list)
