"""
Tests for the Decision Engine.

Covers:
  - Start-investigation rules: in progress, cooldown boundary, severity
  - Pause/resume rules and missing app state
  - Fix plans, avoid list and priority assessment
  - Investigation lifecycle: start, activation, progress, completion
  - Scheduler wake-ups and ignoring its own writes
  - Idempotent start/stop/destroy
"""

from __future__ import annotations

import asyncio

import pytest

from pitboss.clients.repository import InMemoryRepository
from pitboss.config import DecisionConfig
from pitboss.events.bus import EventBus
from pitboss.events.types import PitbossEvent, PitbossEventType
from pitboss.primitives.issue import IssueSeverity
from pitboss.systems.collaborators.issues import InMemoryIssueRegistry, IssueDraft
from pitboss.systems.collaborators.state_store import InMemoryStateStore
from pitboss.systems.decision.engine import (
    KEY_APP_PAUSED_REASON,
    KEY_APP_STATUS,
    KEY_INVESTIGATION,
    KEY_VERIFICATION_STATUS,
    TRIGGER,
    DecisionEngine,
)
from pitboss.systems.decision.types import (
    InvestigationRecord,
    InvestigationState,
    InvestigationStatus,
    RecommendedAction,
)
from pitboss.systems.fixes.knowledge import FixKnowledgeBase
from pitboss.systems.fixes.types import FixResult


class _Clock:
    def __init__(self, now: int = 100_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class _Harness:
    """Engine plus the collaborators it reads, all on one fake clock."""

    def __init__(self, **config: float) -> None:
        self.clock = _Clock()
        self.bus = EventBus()
        self.store = InMemoryStateStore(clock=self.clock)
        self.registry = InMemoryIssueRegistry(clock=self.clock)
        self.fixes = FixKnowledgeBase(
            InMemoryRepository(), issue_registry=self.registry, clock=self.clock,
        )
        self.fixes.initialize()
        self.engine = DecisionEngine(
            self.store,
            self.registry,
            self.fixes,
            event_bus=self.bus,
            config=DecisionConfig(**config),
            clock=self.clock,
        )
        self.events: list[PitbossEvent] = []
        self.bus.subscribe_all(self._record)

    async def _record(self, event: PitbossEvent) -> None:
        self.events.append(event)

    def emitted(self, event_type: PitbossEventType) -> list[PitbossEvent]:
        return [e for e in self.events if e.event_type == event_type]

    async def issue(
        self,
        issue_id: str = "issue1",
        severity: IssueSeverity = IssueSeverity.MEDIUM,
        issue_type: str = "POT_MISMATCH",
    ) -> None:
        await self.registry.detect_issue(
            IssueDraft(id=issue_id, type=issue_type, severity=severity, details={"tableId": "t1"})
        )

    async def completed_at(self, completed_at: int) -> None:
        state = InvestigationState(
            status=InvestigationStatus.COMPLETED,
            history=[
                InvestigationRecord(
                    start_time=completed_at - 15_000,
                    completed_at=completed_at,
                    duration_s=15.0,
                    issues_found=1,
                )
            ],
        )
        await self.store.set(KEY_INVESTIGATION, state.model_dump(mode="json"))


class TestShouldStartInvestigation:
    def test_no_active_issues(self):
        h = _Harness()
        decision = h.engine.should_start_investigation()
        assert not decision.should
        assert decision.reason == "No active issues"

    @pytest.mark.asyncio
    async def test_confidence_by_severity(self):
        h = _Harness()
        await h.issue("issue1", IssueSeverity.MEDIUM)
        assert h.engine.should_start_investigation().confidence == pytest.approx(0.70)

        await h.issue("issue2", IssueSeverity.HIGH)
        decision = h.engine.should_start_investigation()
        assert decision.should
        assert decision.priority == "high"
        assert decision.confidence == pytest.approx(0.85)

        await h.issue("issue3", IssueSeverity.CRITICAL)
        decision = h.engine.should_start_investigation()
        assert decision.priority == "critical"
        assert decision.confidence == pytest.approx(0.95)
        assert set(decision.issue_ids) == {"issue1", "issue2", "issue3"}

    @pytest.mark.asyncio
    async def test_in_progress_blocks(self):
        h = _Harness()
        await h.issue()
        assert await h.engine.start_investigation()

        decision = h.engine.should_start_investigation()
        assert not decision.should
        assert decision.reason == "Investigation already in progress"
        await h.engine.stop()

    @pytest.mark.asyncio
    async def test_cooldown_boundary(self):
        h = _Harness()
        h.clock.now = 10_000
        await h.issue()
        await h.completed_at(10_000)

        h.clock.now = 15_000
        decision = h.engine.should_start_investigation()
        assert not decision.should
        assert decision.reason == "Cooldown period after last investigation (5000ms of 5000ms)"

        h.clock.now = 15_001
        assert h.engine.should_start_investigation().should

    @pytest.mark.asyncio
    async def test_cooldown_checked_before_issues(self):
        h = _Harness()
        await h.completed_at(h.clock.now - 1_000)
        assert h.engine.should_start_investigation().reason.startswith("Cooldown period")


class TestPauseAndResume:
    def test_missing_app_state(self):
        h = _Harness()
        assert h.engine.should_pause_app().reason == "App state not available"
        assert h.engine.should_resume_app().reason == "App state not available"
        assert not h.engine.should_resume_app().should

    @pytest.mark.asyncio
    async def test_already_paused(self):
        h = _Harness()
        await h.store.set(KEY_APP_STATUS, "paused")
        await h.issue(severity=IssueSeverity.CRITICAL)
        decision = h.engine.should_pause_app()
        assert not decision.should
        assert decision.reason == "App already paused"

    @pytest.mark.asyncio
    async def test_pause_after_investigation_found_issues(self):
        h = _Harness()
        await h.store.set(KEY_APP_STATUS, "running")
        await h.issue()
        await h.completed_at(h.clock.now)

        decision = h.engine.should_pause_app()
        assert decision.should
        assert decision.confidence == pytest.approx(0.95)
        assert decision.priority == "high"

    @pytest.mark.asyncio
    async def test_pause_on_critical(self):
        h = _Harness()
        await h.store.set(KEY_APP_STATUS, "running")
        await h.issue(severity=IssueSeverity.CRITICAL)
        decision = h.engine.should_pause_app()
        assert decision.should
        assert decision.confidence == pytest.approx(0.90)

    @pytest.mark.asyncio
    async def test_no_reason_to_pause(self):
        h = _Harness()
        await h.store.set(KEY_APP_STATUS, "running")
        await h.issue(severity=IssueSeverity.HIGH)
        assert h.engine.should_pause_app().reason == "No reason to pause"

    @pytest.mark.asyncio
    async def test_resume_rules(self):
        h = _Harness()
        await h.store.set(KEY_APP_STATUS, "running")
        assert h.engine.should_resume_app().reason == "App not paused"

        await h.store.set(KEY_APP_STATUS, "paused")
        waiting = h.engine.should_resume_app()
        assert not waiting.should
        assert waiting.confidence == pytest.approx(0.8)

        await h.store.set(KEY_VERIFICATION_STATUS, "completed")
        resume = h.engine.should_resume_app()
        assert resume.should
        assert resume.confidence == pytest.approx(0.95)

        await h.issue()
        assert not h.engine.should_resume_app().should

    @pytest.mark.asyncio
    async def test_pause_and_resume_write_state(self):
        h = _Harness()
        await h.store.set(KEY_APP_STATUS, "running")
        await h.issue(severity=IssueSeverity.CRITICAL)

        await h.engine.pause_app(h.engine.should_pause_app())
        assert h.store.get(KEY_APP_STATUS) == "paused"
        assert h.store.get(KEY_APP_PAUSED_REASON) == "1 critical issue(s) detected"
        assert len(h.emitted(PitbossEventType.UNITY_PAUSE_REQUESTED)) == 1

        h.registry.resolve("issue1")
        await h.store.set(KEY_VERIFICATION_STATUS, "completed")
        await h.engine.resume_app(h.engine.should_resume_app())
        assert h.store.get(KEY_APP_STATUS) == "running"
        assert h.store.get(KEY_APP_PAUSED_REASON) is None
        assert len(h.emitted(PitbossEventType.UNITY_RESUME_REQUESTED)) == 1


class TestFixPlanning:
    @pytest.mark.asyncio
    async def test_plans_sorted_by_priority(self):
        h = _Harness()
        await h.issue("issue1", IssueSeverity.LOW)
        await h.issue("issue2", IssueSeverity.CRITICAL)
        plans = h.engine.what_fixes_to_try()
        assert [p.issue_id for p in plans] == ["issue2", "issue1"]

    @pytest.mark.asyncio
    async def test_suggestions_come_from_knowledge_base(self):
        h = _Harness()
        await h.issue("issue1")
        await h.fixes.record_attempt("issue1", "resetPot", result=FixResult.SUCCESS)
        await h.issue("issue2")

        plan = next(p for p in h.engine.what_fixes_to_try() if p.issue_id == "issue2")
        assert [s.method for s in plan.suggestions] == ["resetPot"]

    @pytest.mark.asyncio
    async def test_avoid_is_deduplicated_by_method(self):
        h = _Harness()
        await h.issue("issue1")
        await h.issue("issue2")
        await h.fixes.record_attempt("issue1", "resetPot", result=FixResult.FAILURE)
        await h.fixes.record_attempt("issue2", "resetPot", result=FixResult.FAILURE)

        avoid = h.engine.what_to_avoid()
        assert len(avoid) == 1
        assert avoid[0].method == "resetPot"
        assert set(avoid[0].issue_ids) == {"issue1", "issue2"}

    @pytest.mark.asyncio
    async def test_priority(self):
        h = _Harness()
        assessment = h.engine.whats_the_priority()
        assert (assessment.priority, assessment.action) == ("low", RecommendedAction.MONITOR)

        await h.issue("issue1", IssueSeverity.MEDIUM)
        assert h.engine.whats_the_priority().priority == "medium"

        await h.issue("issue2", IssueSeverity.HIGH)
        assessment = h.engine.whats_the_priority()
        assert (assessment.priority, assessment.action) == ("high", RecommendedAction.INVESTIGATE)

        await h.issue("issue3", IssueSeverity.CRITICAL)
        assessment = h.engine.whats_the_priority()
        assert assessment.action == RecommendedAction.INVESTIGATE_AND_FIX
        assert assessment.issue_ids == ["issue3"]

    @pytest.mark.asyncio
    async def test_make_decisions_has_no_side_effects(self):
        h = _Harness()
        await h.store.set(KEY_APP_STATUS, "running")
        await h.issue(severity=IssueSeverity.CRITICAL)
        writes = h.store.stats["total_writes"]

        decisions = h.engine.make_decisions()
        assert decisions.investigation.should
        assert decisions.pause.should
        assert h.store.stats["total_writes"] == writes
        assert h.events == []


class TestInvestigationLifecycle:
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        h = _Harness()
        await h.issue()
        assert await h.engine.start_investigation()
        assert not await h.engine.start_investigation()

        investigation = h.engine.investigation()
        assert investigation.status == InvestigationStatus.STARTING
        assert investigation.start_time == h.clock.now
        assert investigation.issue_ids == ["issue1"]
        assert investigation.progress == 0.0
        assert h.engine.stats["investigations_started"] == 1
        assert len(h.emitted(PitbossEventType.INVESTIGATION_STARTED)) == 1
        await h.engine.stop()

    @pytest.mark.asyncio
    async def test_activation_after_delay(self):
        h = _Harness(activation_delay_s=0.01)
        await h.issue()
        await h.engine.start_investigation()
        await asyncio.sleep(0.1)
        assert h.engine.investigation().status == InvestigationStatus.ACTIVE
        await h.engine.stop()

    @pytest.mark.asyncio
    async def test_progress_and_completion(self):
        h = _Harness(investigation_timeout_s=10.0)
        await h.store.set(KEY_APP_STATUS, "running")
        await h.issue()
        await h.engine.start_investigation()
        await h.engine.stop()
        await h.store.set(f"{KEY_INVESTIGATION}.status", "active")

        h.clock.now += 5_000
        await h.engine.update_progress()
        investigation = h.engine.investigation()
        assert investigation.progress == pytest.approx(50.0)
        assert investigation.time_remaining_s == pytest.approx(5.0)

        writes = h.store.stats["total_writes"]
        h.clock.now += 5
        await h.engine.update_progress()
        assert h.store.stats["total_writes"] == writes

        h.clock.now += 4_995
        await h.engine.update_progress()
        investigation = h.engine.investigation()
        assert investigation.status == InvestigationStatus.COMPLETED
        assert investigation.progress == 100.0
        assert investigation.time_remaining_s == 0.0
        assert investigation.history[-1].duration_s == pytest.approx(10.0)
        assert investigation.history[-1].issues_found == 1

        # Completion with issues found pauses the app
        assert h.store.get(KEY_APP_STATUS) == "paused"
        completed = h.emitted(PitbossEventType.INVESTIGATION_COMPLETED)
        assert completed[0].data == {"issueIds": ["issue1"], "duration": 10.0}
        assert h.engine.stats["investigations_completed"] == 1

    @pytest.mark.asyncio
    async def test_update_progress_ignores_idle(self):
        h = _Harness()
        await h.engine.update_progress()
        assert h.engine.investigation().status == InvestigationStatus.IDLE
        assert h.store.stats["total_writes"] == 0

    @pytest.mark.asyncio
    async def test_tick_executes_decisions(self):
        h = _Harness()
        await h.store.set(KEY_APP_STATUS, "running")
        await h.issue(severity=IssueSeverity.HIGH)

        await h.engine.tick()
        assert h.engine.investigation().status == InvestigationStatus.STARTING
        assert h.store.get(KEY_APP_STATUS) == "running"
        suggestions = h.emitted(PitbossEventType.FIX_SUGGESTIONS)
        assert len(suggestions) == 1
        assert suggestions[0].data["fixes"][0]["issue_id"] == "issue1"
        assert h.engine.stats["ticks"] == 1
        assert h.engine.stats["fix_suggestions"] == 1
        await h.engine.stop()


class TestScheduler:
    @pytest.mark.asyncio
    async def test_own_writes_do_not_wake(self):
        h = _Harness()
        await h.engine.on_state_changed(
            PitbossEvent(
                event_type=PitbossEventType.STATE_CHANGED,
                data={"path": KEY_INVESTIGATION, "trigger": TRIGGER},
            )
        )
        assert not h.engine._wake.is_set()

        await h.engine.on_state_changed(
            PitbossEvent(
                event_type=PitbossEventType.STATE_CHANGED,
                data={"path": f"{KEY_INVESTIGATION}.status", "trigger": "operator"},
            )
        )
        assert h.engine._wake.is_set()

    @pytest.mark.asyncio
    async def test_unrelated_paths_do_not_wake(self):
        h = _Harness()
        await h.engine.on_state_changed(
            PitbossEvent(
                event_type=PitbossEventType.STATE_CHANGED,
                data={"path": "game.tables.t1.pot", "trigger": "game"},
            )
        )
        assert not h.engine._wake.is_set()

    @pytest.mark.asyncio
    async def test_issue_detection_triggers_decision(self):
        h = _Harness(tick_interval_s=30.0, activation_delay_s=0.01)
        h.engine.start()
        await h.issue()
        await h.engine.on_issue_detected(
            PitbossEvent(event_type=PitbossEventType.ISSUE_DETECTED, data={})
        )
        await asyncio.sleep(0.1)

        assert h.engine.investigation().status == InvestigationStatus.ACTIVE
        assert h.engine.stats["ticks"] == 1
        await h.engine.stop()

    @pytest.mark.asyncio
    async def test_start_stop_destroy_are_idempotent(self):
        h = _Harness()
        h.engine.start()
        h.engine.start()
        assert h.engine.is_running

        await h.engine.stop()
        await h.engine.stop()
        await h.engine.destroy()
        assert not h.engine.is_running
        assert not h.engine.stats["running"]
