"""
Pitboss — Causal Analyzer

Turns the raw stream of state changes into an explanation per issue.

Every state mutation lands in a bounded history. When an issue is
detected, the history inside the lookback window before the issue's
first sighting is filtered down to the changes that plausibly relate to
it (first match wins):

  1. Exact path          → direct
  2. Same component      → indirect
  3. Table id in path    → indirect
  4. Player id in path   → indirect
  5. Dependent component → dependency

The earliest related change is the first root-cause candidate. From there
the analyzer may walk back through the dependency graph, up to max_hops
levels, looking for an even earlier change in something the candidate
depends on.
"""

from __future__ import annotations

from collections import Counter, deque
from typing import TYPE_CHECKING, Any

import structlog

from pitboss.config import CausalConfig
from pitboss.events.types import PitbossEvent, PitbossEventType
from pitboss.primitives.common import Clock, now_ms
from pitboss.primitives.issue import (
    CausalLink,
    Issue,
    Relationship,
    RootCause,
    StateChange,
)
from pitboss.systems.causal.types import (
    CausalGraph,
    CausalGraphEdge,
    CausalGraphNode,
    GraphEdgeKind,
    GraphNodeKind,
)

if TYPE_CHECKING:
    from pitboss.events.bus import EventBus
    from pitboss.systems.collaborators.dependency_graph import DependencyLookup
    from pitboss.systems.collaborators.issues import IssueRegistry

logger = structlog.get_logger()


def _component(path: str) -> str:
    return path.split(".", 1)[0]


def _node_id(timestamp: int, path: str) -> str:
    return f"{timestamp}_{path}"


class CausalAnalyzer:
    """
    Explains issues in terms of the state changes that preceded them.

    The dependency graph is optional. Without one, relatedness stops at
    rule 4 and the root cause is simply the earliest chain entry.
    """

    def __init__(
        self,
        config: CausalConfig | None = None,
        issue_registry: IssueRegistry | None = None,
        dependency_graph: DependencyLookup | None = None,
        event_bus: EventBus | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._config = config or CausalConfig()
        self._registry = issue_registry
        self._graph = dependency_graph
        self._bus = event_bus
        self._clock = clock

        self._history: deque[StateChange] = deque(maxlen=self._config.history_capacity)
        self._chains: dict[str, list[CausalLink]] = {}
        self._root_causes: dict[str, RootCause] = {}
        # Issues analysed here, for graph export when no registry is wired
        self._issues: dict[str, Issue] = {}
        self._total_recorded: int = 0

        self._logger = logger.bind(system="causal", component="causal_analyzer")

    # ─── History ─────────────────────────────────────────────────────

    def record_state_change(self, change: StateChange) -> None:
        """Append a mutation. The oldest entry is evicted at capacity."""
        self._history.append(change)
        self._total_recorded += 1

    @property
    def history(self) -> list[StateChange]:
        return list(self._history)

    # ─── Event Handlers ──────────────────────────────────────────────

    async def on_state_changed(self, event: PitbossEvent) -> None:
        data = event.data
        self.record_state_change(
            StateChange(
                timestamp=int(data.get("timestamp", event.timestamp)),
                path=str(data["path"]),
                old_value=data.get("oldValue"),
                new_value=data.get("newValue"),
                trigger=str(data.get("trigger", "unknown")),
            )
        )

    async def on_issue_detected(self, event: PitbossEvent) -> None:
        raw = event.data["issue"]
        issue = None
        if self._registry is not None:
            issue = self._registry.get_issue(raw["id"])
        if issue is None:
            issue = Issue.model_validate(raw)
        await self.analyze_issue(issue)

    # ─── Analysis ────────────────────────────────────────────────────

    async def analyze_issue(self, issue: Issue) -> RootCause | None:
        """
        Trace an issue, store its chain and root cause, and write both back
        onto the issue. A re-detection overwrites the previous findings.
        """
        chain = self.trace_backwards(issue)
        root_cause = self.find_root_cause(issue, chain)

        self._chains[issue.id] = chain
        if root_cause is not None:
            self._root_causes[issue.id] = root_cause
        else:
            self._root_causes.pop(issue.id, None)

        issue.root_cause = root_cause
        issue.causal_chain = list(chain)
        self._issues[issue.id] = issue
        if self._registry is not None:
            self._registry.annotate(issue.id, root_cause, chain)

        if root_cause is None:
            self._logger.debug("no_root_cause", issue_id=issue.id, issue_type=issue.type)
            return None

        self._logger.info(
            "root_cause_found",
            issue_id=issue.id,
            path=root_cause.path,
            chain_length=root_cause.chain_length,
            hops=root_cause.hops,
        )
        if self._bus is not None:
            await self._bus.publish(
                PitbossEventType.ROOT_CAUSE_FOUND,
                {
                    "issueId": issue.id,
                    "rootCause": root_cause.model_dump(mode="json"),
                    "causalChain": [link.model_dump(mode="json") for link in chain],
                },
                source_system="causal",
            )
        return root_cause

    def trace_backwards(self, issue: Issue, window_ms: int | None = None) -> list[CausalLink]:
        """Related changes in [first_seen - window, first_seen], oldest first."""
        window = self._config.lookback_window_ms if window_ms is None else window_ms
        end = issue.first_seen
        start = end - window

        in_window = [c for c in self._history if start <= c.timestamp <= end]
        in_window.sort(key=lambda c: c.timestamp)

        chain: list[CausalLink] = []
        for change in in_window:
            relationship = self._relationship(issue, change)
            if relationship is not None:
                chain.append(CausalLink.from_change(change, relationship))
        return chain

    def _relationship(self, issue: Issue, change: StateChange) -> Relationship | None:
        path = issue.details.get("path")
        if path and change.path == path:
            return Relationship.DIRECT

        component = issue.component
        if component and change.component == component:
            return Relationship.INDIRECT

        table_id = issue.table_id
        if table_id and table_id in change.path:
            return Relationship.INDIRECT

        player_id = issue.player_id
        if player_id and player_id in change.path:
            return Relationship.INDIRECT

        if component and self._graph is not None:
            if change.component in self._graph.get_dependents(component):
                return Relationship.DEPENDENCY

        return None

    def find_root_cause(
        self,
        issue: Issue,
        chain: list[CausalLink],
        max_hops: int | None = None,
    ) -> RootCause | None:
        """
        Earliest chain entry, walked back through declared dependencies.

        Each hop looks for the earliest recorded change, strictly before the
        current candidate, whose path mentions one of the candidate
        component's dependencies.
        """
        if not chain:
            return None

        hops_allowed = self._config.max_hops if max_hops is None else max_hops
        first = chain[0]
        path, timestamp = first.path, first.timestamp
        value, trigger = first.new_value, first.trigger
        hops = 0

        if self._graph is not None:
            while hops < hops_allowed:
                dependencies = self._graph.get_dependencies(_component(path))
                if not dependencies:
                    break
                earlier = [
                    c for c in self._history
                    if c.timestamp < timestamp and any(dep in c.path for dep in dependencies)
                ]
                if not earlier:
                    break
                origin = min(earlier, key=lambda c: c.timestamp)
                path, timestamp = origin.path, origin.timestamp
                value, trigger = origin.new_value, origin.trigger
                hops += 1

        return RootCause(
            path=path,
            timestamp=timestamp,
            value=value,
            trigger=trigger,
            chain_length=len(chain) + hops,
            hops=hops,
        )

    # ─── Queries ─────────────────────────────────────────────────────

    def get_causal_chain(self, issue_id: str) -> list[CausalLink]:
        return list(self._chains.get(issue_id, []))

    def get_root_cause(self, issue_id: str) -> RootCause | None:
        return self._root_causes.get(issue_id)

    @property
    def chains(self) -> dict[str, list[CausalLink]]:
        return {issue_id: list(chain) for issue_id, chain in self._chains.items()}

    def build_causal_graph(self) -> CausalGraph:
        """Nodes for every recorded change and known issue; edges from each chain."""
        graph = CausalGraph()

        for change in self._history:
            graph.nodes.append(
                CausalGraphNode(
                    id=_node_id(change.timestamp, change.path),
                    kind=GraphNodeKind.STATE_CHANGE,
                    label=change.path,
                    timestamp=change.timestamp,
                    data={
                        "oldValue": change.old_value,
                        "newValue": change.new_value,
                        "trigger": change.trigger,
                    },
                )
            )

        issues: dict[str, Issue] = dict(self._issues)
        if self._registry is not None:
            for issue in self._registry.all_issues():
                issues[issue.id] = issue
        for issue in issues.values():
            graph.nodes.append(
                CausalGraphNode(
                    id=issue.id,
                    kind=GraphNodeKind.ISSUE,
                    label=issue.type,
                    timestamp=issue.first_seen,
                    data={"severity": issue.severity.value},
                )
            )

        for issue_id, chain in self._chains.items():
            if not chain:
                continue
            graph.edges.append(
                CausalGraphEdge(
                    source=_node_id(chain[0].timestamp, chain[0].path),
                    target=issue_id,
                    kind=GraphEdgeKind.CAUSES,
                )
            )
            for prev, nxt in zip(chain, chain[1:]):
                graph.edges.append(
                    CausalGraphEdge(
                        source=_node_id(prev.timestamp, prev.path),
                        target=_node_id(nxt.timestamp, nxt.path),
                        kind=GraphEdgeKind.LEADS_TO,
                    )
                )
        return graph

    @property
    def statistics(self) -> dict[str, Any]:
        relationships: Counter[str] = Counter()
        for chain in self._chains.values():
            relationships.update(link.relationship.value for link in chain)
        lengths = [len(chain) for chain in self._chains.values()]
        return {
            "history_size": len(self._history),
            "total_recorded": self._total_recorded,
            "analyzed_issues": len(self._chains),
            "root_causes_found": len(self._root_causes),
            "avg_chain_length": sum(lengths) / len(lengths) if lengths else 0.0,
            "relationships": dict(relationships),
        }
