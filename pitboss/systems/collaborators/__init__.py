"""
Pitboss — Collaborators

The contracts the monitoring loop consumes (state store, issue registry,
dependency graph) and the in-memory implementations the service runs on.
"""

from pitboss.systems.collaborators.dependency_graph import DependencyGraph, DependencyLookup
from pitboss.systems.collaborators.issues import (
    InMemoryIssueRegistry,
    IssueDraft,
    IssueRegistry,
    issue_fingerprint,
)
from pitboss.systems.collaborators.state_store import InMemoryStateStore, StateStore

__all__ = [
    "DependencyGraph",
    "DependencyLookup",
    "InMemoryIssueRegistry",
    "InMemoryStateStore",
    "IssueDraft",
    "IssueRegistry",
    "StateStore",
    "issue_fingerprint",
]
