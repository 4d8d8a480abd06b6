"""
Tests for PitbossService wiring.

Covers:
  - Initialize seeds app state and subscribes once
  - End-to-end: state change → issue → root cause → attempt → learning
  - Loop lifecycle and idempotent shutdown
  - Health report
  - Knowledge survives a restart on the JSON backend
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from pitboss.clients.repository import InMemoryRepository
from pitboss.config import LearningConfig, PersistenceConfig, PitbossConfig
from pitboss.errors import PersistenceError
from pitboss.service import PitbossService
from pitboss.systems.collaborators.issues import IssueDraft
from pitboss.systems.fixes.types import FixResult


class _Clock:
    def __init__(self, now: int = 100_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class _BrokenDiskRepository(InMemoryRepository):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    def save(self, key: str, value: Any) -> None:
        raise PersistenceError("disk gone", key=key, location="test")

    def close(self) -> None:
        self.closed = True


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_seeds_app_status(self):
        service = PitbossService()
        await service.initialize(start_loops=False)
        assert service.state_store.get("system.app.status") == "running"
        assert not service.decision_engine.is_running
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_subscribes_once(self):
        service = PitbossService()
        await service.initialize(start_loops=False)
        await service.initialize(start_loops=False)
        await service.shutdown()
        await service.initialize(start_loops=False)
        assert service.event_bus.stats["subscriber_count"] == 6
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_loops_start_and_stop(self):
        service = PitbossService()
        await service.initialize()
        assert service.decision_engine.is_running
        assert service.learning_engine.stats["monitoring"]
        assert (await service.health())["decision_loop"]

        await service.shutdown()
        await service.shutdown()
        assert not service.decision_engine.is_running
        assert not service.learning_engine.stats["monitoring"]
        assert (await service.health())["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_health(self):
        service = PitbossService()
        await service.initialize(start_loops=False)
        health = await service.health()
        assert health == {
            "status": "healthy",
            "decision_loop": False,
            "confidence": None,
            "active_issues": 0,
            "investigation": "idle",
            "app_status": "running",
        }
        await service.learning_engine.get_learning_confidence()
        assert (await service.health())["confidence"] == 0.0
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_monitoring_save_failure_degrades_health(self):
        repository = _BrokenDiskRepository()
        service = PitbossService(
            PitbossConfig(learning=LearningConfig(confidence_interval_s=0.01)),
            repository=repository,
        )
        await service.initialize()
        await asyncio.sleep(0.1)

        health = await service.health()
        assert health["status"] == "degraded"
        assert service.stats["learning"]["monitor_error"] == "disk gone"

        with pytest.raises(PersistenceError):
            await service.shutdown()
        assert repository.closed
        assert not service.decision_engine.is_running
        await service.shutdown()


class TestWiring:
    @pytest.mark.asyncio
    async def test_issue_flows_through_every_component(self):
        clock = _Clock()
        service = PitbossService(clock=clock)
        await service.initialize(start_loops=False)

        await service.state_store.set("game.tables.t1.pot", 0, trigger="payout")
        clock.now += 1_000
        await service.issue_registry.detect_issue(
            IssueDraft(id="issue1", type="POT_MISMATCH", details={"tableId": "t1"})
        )

        issue = service.issue_registry.get_issue("issue1")
        assert issue.root_cause is not None
        assert issue.root_cause.path == "game.tables.t1.pot"
        assert service.causal_analyzer.get_root_cause("issue1") == issue.root_cause
        assert service.decision_engine.make_decisions().investigation.should

        await service.fix_knowledge.record_attempt("issue1", "resetPot", result=FixResult.SUCCESS)
        pattern = service.learning_engine.get_pattern("issueType:POT_MISMATCH")
        assert pattern is not None
        assert pattern.successes == 1

        chain = service.learning_engine.get_causal_chain("issue1")
        assert [link.kind for link in chain] == ["fix", "state_change"]
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_stats_cover_every_component(self):
        service = PitbossService()
        await service.initialize(start_loops=False)
        assert set(service.stats) == {
            "event_bus", "fixes", "causal", "learning", "decision", "issues",
        }
        await service.shutdown()


class TestPersistence:
    @pytest.mark.asyncio
    async def test_knowledge_survives_restart(self, tmp_path):
        config = PitbossConfig(
            persistence=PersistenceConfig(backend="json", path=str(tmp_path / "pitboss.json")),
        )
        first = PitbossService(config)
        await first.initialize(start_loops=False)
        await first.fix_knowledge.record_attempt(
            "issue1", "resetPot", details={"issueType": "POT_MISMATCH"},
        )
        await first.shutdown()

        second = PitbossService(config)
        await second.initialize(start_loops=False)
        assert second.fix_knowledge.get_method_stats("resetPot") is not None
        assert second.learning_engine.get_pattern("fixMethod:resetPot") is not None
        await second.shutdown()
