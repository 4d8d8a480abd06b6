"""
Pitboss — Causal Analysis

Traces issues back through recorded state changes to a root cause.
"""

from pitboss.systems.causal.analyzer import CausalAnalyzer
from pitboss.systems.causal.types import (
    CausalGraph,
    CausalGraphEdge,
    CausalGraphNode,
    GraphEdgeKind,
    GraphNodeKind,
)

__all__ = [
    "CausalAnalyzer",
    "CausalGraph",
    "CausalGraphEdge",
    "CausalGraphNode",
    "GraphEdgeKind",
    "GraphNodeKind",
]
