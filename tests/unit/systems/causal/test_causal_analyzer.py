"""
Tests for the Causal Analyzer.

Covers:
  - Backward tracing: window, ordering, relationship rules
  - Root cause selection and dependency hops (max_hops)
  - Issue annotation, events and queries
  - Causal graph export and statistics
"""

from __future__ import annotations

import pytest

from pitboss.config import CausalConfig
from pitboss.events.bus import EventBus
from pitboss.events.types import PitbossEvent, PitbossEventType
from pitboss.primitives.issue import Issue, IssueSeverity, Relationship, StateChange
from pitboss.systems.causal.analyzer import CausalAnalyzer
from pitboss.systems.causal.types import GraphEdgeKind, GraphNodeKind
from pitboss.systems.collaborators.dependency_graph import DependencyGraph
from pitboss.systems.collaborators.issues import InMemoryIssueRegistry, IssueDraft


def _make_issue(
    first_seen: int = 30_000,
    issue_type: str = "POT_MISMATCH",
    issue_id: str = "issue1",
    **details,
) -> Issue:
    return Issue(
        id=issue_id,
        type=issue_type,
        severity=IssueSeverity.HIGH,
        details=details,
        first_seen=first_seen,
        last_seen=first_seen,
    )


def _change(timestamp: int, path: str, old=None, new=None, trigger: str = "test") -> StateChange:
    return StateChange(
        timestamp=timestamp, path=path, old_value=old, new_value=new, trigger=trigger,
    )


class TestTraceBackwards:
    def test_table_id_match_is_indirect(self):
        analyzer = CausalAnalyzer(config=CausalConfig(lookback_window_ms=60_000))
        analyzer.record_state_change(_change(0, "game.tables.t1.pot", 100, 150))
        issue = _make_issue(first_seen=30_000, tableId="t1")

        chain = analyzer.trace_backwards(issue)
        assert len(chain) == 1
        assert chain[0].path == "game.tables.t1.pot"
        assert chain[0].old_value == 100
        assert chain[0].new_value == 150
        assert chain[0].relationship == Relationship.INDIRECT

    def test_exact_path_is_direct(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot"))
        issue = _make_issue(path="game.tables.t1.pot", tableId="t1")

        chain = analyzer.trace_backwards(issue)
        assert chain[0].relationship == Relationship.DIRECT

    def test_same_component_is_indirect(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(1_000, "game.phase"))
        issue = _make_issue(component="game")

        chain = analyzer.trace_backwards(issue)
        assert [link.relationship for link in chain] == [Relationship.INDIRECT]

    def test_player_id_match_is_indirect(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(1_000, "players.p7.chips"))
        issue = _make_issue(playerId="p7")

        assert [link.path for link in analyzer.trace_backwards(issue)] == ["players.p7.chips"]

    def test_dependent_component_is_dependency(self):
        analyzer = CausalAnalyzer(dependency_graph=DependencyGraph.default())
        # players depends on game, so a players change may explain a game issue
        analyzer.record_state_change(_change(1_000, "players.p1.chips"))
        issue = _make_issue(component="game")

        chain = analyzer.trace_backwards(issue)
        assert [link.relationship for link in chain] == [Relationship.DEPENDENCY]

    def test_dependency_rule_needs_a_graph(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(1_000, "players.p1.chips"))
        assert analyzer.trace_backwards(_make_issue(component="game")) == []

    def test_unrelated_changes_are_dropped(self):
        analyzer = CausalAnalyzer(dependency_graph=DependencyGraph.default())
        analyzer.record_state_change(_change(1_000, "system.cpu"))
        analyzer.record_state_change(_change(2_000, "game.tables.t2.pot"))
        assert analyzer.trace_backwards(_make_issue(tableId="t1")) == []

    def test_window_bounds(self):
        analyzer = CausalAnalyzer(config=CausalConfig(lookback_window_ms=10_000))
        analyzer.record_state_change(_change(19_999, "game.tables.t1.pot"))  # too old
        analyzer.record_state_change(_change(20_000, "game.tables.t1.bet"))  # window start
        analyzer.record_state_change(_change(30_000, "game.tables.t1.deck"))  # first seen
        analyzer.record_state_change(_change(30_001, "game.tables.t1.seat"))  # after issue

        chain = analyzer.trace_backwards(_make_issue(first_seen=30_000, tableId="t1"))
        assert [link.path for link in chain] == ["game.tables.t1.bet", "game.tables.t1.deck"]

    def test_explicit_window_overrides_config(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(25_000, "game.tables.t1.pot"))
        issue = _make_issue(first_seen=30_000, tableId="t1")
        assert analyzer.trace_backwards(issue, window_ms=1_000) == []
        assert len(analyzer.trace_backwards(issue, window_ms=5_000)) == 1

    def test_chain_is_time_ordered_and_root_is_earliest(self):
        analyzer = CausalAnalyzer()
        for ts in [9_000, 3_000, 7_000, 1_000, 5_000]:
            analyzer.record_state_change(_change(ts, f"game.tables.t1.step{ts}"))
        issue = _make_issue(first_seen=10_000, tableId="t1")

        chain = analyzer.trace_backwards(issue)
        timestamps = [link.timestamp for link in chain]
        assert timestamps == sorted(timestamps)
        assert all(a < b for a, b in zip(timestamps, timestamps[1:]))

        root = analyzer.find_root_cause(issue, chain)
        assert root is not None
        assert root.timestamp <= chain[0].timestamp

    def test_history_is_bounded(self):
        analyzer = CausalAnalyzer(config=CausalConfig(history_capacity=3))
        for ts in range(5):
            analyzer.record_state_change(_change(ts, f"game.x{ts}"))
        assert [c.timestamp for c in analyzer.history] == [2, 3, 4]
        assert analyzer.statistics["total_recorded"] == 5


class TestFindRootCause:
    def test_empty_chain_has_no_root(self):
        analyzer = CausalAnalyzer()
        assert analyzer.find_root_cause(_make_issue(), []) is None

    def test_without_graph_root_is_first_entry(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot", 100, 150, "bet"))
        analyzer.record_state_change(_change(2_000, "game.tables.t1.pot", 150, 90, "payout"))
        issue = _make_issue(tableId="t1")

        root = analyzer.find_root_cause(issue, analyzer.trace_backwards(issue))
        assert root is not None
        assert root.path == "game.tables.t1.pot"
        assert root.timestamp == 1_000
        assert root.value == 150
        assert root.trigger == "bet"
        assert root.chain_length == 2
        assert root.hops == 0

    def test_single_hop_through_dependency(self):
        analyzer = CausalAnalyzer(dependency_graph=DependencyGraph.default())
        analyzer.record_state_change(_change(100, "database.pool", "ok", "exhausted"))
        analyzer.record_state_change(_change(500, "server.status", "up", "degraded"))
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot", 100, 150))
        issue = _make_issue(tableId="t1")
        chain = analyzer.trace_backwards(issue)

        root = analyzer.find_root_cause(issue, chain)
        assert root is not None
        # game depends on server; the walk stops after one hop by default
        assert root.path == "server.status"
        assert root.timestamp == 500
        assert root.hops == 1
        assert root.chain_length == len(chain) + 1

    def test_max_hops_walks_further(self):
        analyzer = CausalAnalyzer(
            config=CausalConfig(max_hops=2), dependency_graph=DependencyGraph.default(),
        )
        analyzer.record_state_change(_change(100, "database.pool", "ok", "exhausted"))
        analyzer.record_state_change(_change(500, "server.status", "up", "degraded"))
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot", 100, 150))
        issue = _make_issue(tableId="t1")

        root = analyzer.find_root_cause(issue, analyzer.trace_backwards(issue))
        assert root is not None
        assert root.path == "database.pool"
        assert root.hops == 2

    def test_zero_hops_disables_walk(self):
        analyzer = CausalAnalyzer(dependency_graph=DependencyGraph.default())
        analyzer.record_state_change(_change(500, "server.status"))
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot"))
        issue = _make_issue(tableId="t1")

        root = analyzer.find_root_cause(issue, analyzer.trace_backwards(issue), max_hops=0)
        assert root is not None
        assert root.path == "game.tables.t1.pot"

    def test_later_dependency_change_is_ignored(self):
        analyzer = CausalAnalyzer(dependency_graph=DependencyGraph.default())
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot"))
        analyzer.record_state_change(_change(2_000, "server.status"))
        issue = _make_issue(tableId="t1")

        root = analyzer.find_root_cause(issue, analyzer.trace_backwards(issue))
        assert root is not None
        assert root.path == "game.tables.t1.pot"
        assert root.hops == 0


class TestAnalyzeIssue:
    @pytest.mark.asyncio
    async def test_annotates_registry_and_emits(self):
        bus = EventBus()
        registry = InMemoryIssueRegistry(clock=lambda: 30_000)
        analyzer = CausalAnalyzer(issue_registry=registry, event_bus=bus)
        analyzer.record_state_change(_change(0, "game.tables.t1.pot", 100, 150))
        issue = await registry.detect_issue(
            IssueDraft(id="issue1", type="POT_MISMATCH", details={"tableId": "t1"})
        )

        root = await analyzer.analyze_issue(issue)
        assert root is not None

        stored = registry.get_issue("issue1")
        assert stored is not None
        assert stored.root_cause == root
        assert stored.causal_chain is not None and len(stored.causal_chain) == 1

        assert analyzer.get_root_cause("issue1") == root
        assert len(analyzer.get_causal_chain("issue1")) == 1

        events = bus.recent(PitbossEventType.ROOT_CAUSE_FOUND)
        assert len(events) == 1
        assert events[0].data["issueId"] == "issue1"
        assert events[0].data["rootCause"]["path"] == "game.tables.t1.pot"

    @pytest.mark.asyncio
    async def test_no_related_changes_yields_none(self):
        bus = EventBus()
        analyzer = CausalAnalyzer(event_bus=bus)
        issue = _make_issue(tableId="t1")

        assert await analyzer.analyze_issue(issue) is None
        assert issue.root_cause is None
        assert issue.causal_chain == []
        assert bus.recent(PitbossEventType.ROOT_CAUSE_FOUND) == []

    @pytest.mark.asyncio
    async def test_redetection_overwrites_chain(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot"))
        await analyzer.analyze_issue(_make_issue(first_seen=5_000, tableId="t1"))
        analyzer.record_state_change(_change(6_000, "game.tables.t1.bet"))
        await analyzer.analyze_issue(_make_issue(first_seen=7_000, tableId="t1"))

        assert [link.path for link in analyzer.get_causal_chain("issue1")] == [
            "game.tables.t1.pot",
            "game.tables.t1.bet",
        ]
        assert analyzer.statistics["analyzed_issues"] == 1

    @pytest.mark.asyncio
    async def test_event_handlers(self):
        analyzer = CausalAnalyzer()
        await analyzer.on_state_changed(
            PitbossEvent(
                event_type=PitbossEventType.STATE_CHANGED,
                data={
                    "path": "game.tables.t1.pot",
                    "oldValue": 1,
                    "newValue": 2,
                    "trigger": "bet",
                    "timestamp": 1_000,
                },
            )
        )
        assert analyzer.history[0].trigger == "bet"

        issue = _make_issue(first_seen=2_000, tableId="t1")
        await analyzer.on_issue_detected(
            PitbossEvent(
                event_type=PitbossEventType.ISSUE_DETECTED,
                data={"issue": issue.model_dump(mode="json")},
            )
        )
        root = analyzer.get_root_cause("issue1")
        assert root is not None
        assert root.timestamp == 1_000

    def test_unknown_issue_queries_are_empty(self):
        analyzer = CausalAnalyzer()
        assert analyzer.get_causal_chain("missing") == []
        assert analyzer.get_root_cause("missing") is None


class TestCausalGraph:
    @pytest.mark.asyncio
    async def test_graph_nodes_and_edges(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot"))
        analyzer.record_state_change(_change(2_000, "game.tables.t1.bet"))
        analyzer.record_state_change(_change(2_500, "system.cpu"))
        await analyzer.analyze_issue(_make_issue(first_seen=3_000, tableId="t1"))

        graph = analyzer.build_causal_graph()
        kinds = [n.kind for n in graph.nodes]
        assert kinds.count(GraphNodeKind.STATE_CHANGE) == 3
        assert kinds.count(GraphNodeKind.ISSUE) == 1

        edges = {(e.source, e.target, e.kind) for e in graph.edges}
        assert ("1000_game.tables.t1.pot", "issue1", GraphEdgeKind.CAUSES) in edges
        assert (
            "1000_game.tables.t1.pot",
            "2000_game.tables.t1.bet",
            GraphEdgeKind.LEADS_TO,
        ) in edges
        assert len(graph.edges) == 2

    @pytest.mark.asyncio
    async def test_graph_includes_unanalyzed_registry_issues(self):
        registry = InMemoryIssueRegistry(clock=lambda: 5_000)
        analyzer = CausalAnalyzer(issue_registry=registry)
        await registry.detect_issue(IssueDraft(id="quiet", type="SERVER_DOWN"))

        graph = analyzer.build_causal_graph()
        assert [(n.id, n.kind) for n in graph.nodes] == [("quiet", GraphNodeKind.ISSUE)]
        assert graph.edges == []

    def test_empty_graph(self):
        graph = CausalAnalyzer().build_causal_graph()
        assert graph.nodes == []
        assert graph.edges == []

    @pytest.mark.asyncio
    async def test_statistics_count_relationships(self):
        analyzer = CausalAnalyzer()
        analyzer.record_state_change(_change(1_000, "game.tables.t1.pot"))
        analyzer.record_state_change(_change(2_000, "game.tables.t1.bet"))
        await analyzer.analyze_issue(
            _make_issue(first_seen=3_000, tableId="t1", path="game.tables.t1.pot")
        )

        stats = analyzer.statistics
        assert stats["relationships"] == {"direct": 1, "indirect": 1}
        assert stats["avg_chain_length"] == 2.0
        assert stats["root_causes_found"] == 1
