"""
Pitboss — Decision Engine

Turns issue and investigation state into actions. Five independent
questions are answered on every tick and combined into one decision set:

  1. Start an investigation?   (not while one runs, not during cooldown)
  2. Pause the monitored app?  (investigation found issues, or critical)
  3. Resume the monitored app? (verified clean)
  4. Which fixes to try?       (knowledge-base suggestions per issue)
  5. What to avoid?            (methods that already failed)

Investigation state lives in the shared state store, not here. All
writes to investigation progress come from one scheduler task. Event
handlers only wake that task; they never write state themselves, so the
engine cannot trigger itself through its own writes.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog

from pitboss.config import DecisionConfig
from pitboss.events.types import PitbossEvent, PitbossEventType
from pitboss.primitives.common import Clock, now_ms
from pitboss.primitives.issue import Issue, IssueSeverity
from pitboss.systems.decision.types import (
    AppStatus,
    AvoidEntry,
    Decision,
    DecisionSet,
    FixPlan,
    InvestigationRecord,
    InvestigationState,
    InvestigationStatus,
    PriorityAssessment,
    RecommendedAction,
    issue_ids,
)

if TYPE_CHECKING:
    from pitboss.events.bus import EventBus
    from pitboss.systems.collaborators.issues import IssueRegistry
    from pitboss.systems.collaborators.state_store import StateStore
    from pitboss.systems.fixes.knowledge import FixKnowledgeBase

logger = structlog.get_logger()

# State store paths
KEY_INVESTIGATION = "monitoring.investigation"
KEY_VERIFICATION_STATUS = "monitoring.verification.status"
KEY_APP_STATUS = "system.app.status"
KEY_APP_PAUSED_REASON = "system.app.paused_reason"
KEY_APP_PAUSED_AT = "system.app.paused_at"

# Trigger stamped on every write this engine makes
TRIGGER = "decision_engine"

# Progress is rewritten only when it moves by more than this
_PROGRESS_STEP = 1.0
_REMAINING_STEP_S = 0.5
_MAX_INVESTIGATION_HISTORY = 50


def _by_severity(issues: list[Issue], severity: IssueSeverity) -> list[Issue]:
    return [i for i in issues if i.severity == severity]


class DecisionEngine:
    """
    Polling policy over the issue registry and fix knowledge base.

    Rules:
    1. One investigation at a time, with a cooldown after each completes
    2. Starting → active after a short delay, completion after a timeout
    3. Completion re-evaluates the pause decision
    4. Repeating an action that is already in effect is a no-op
    """

    def __init__(
        self,
        state_store: StateStore,
        issue_registry: IssueRegistry,
        fix_knowledge: FixKnowledgeBase,
        event_bus: EventBus | None = None,
        config: DecisionConfig | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._state = state_store
        self._registry = issue_registry
        self._fixes = fix_knowledge
        self._bus = event_bus
        self._config = config or DecisionConfig()
        self._clock = clock

        self._loop_task: asyncio.Task[None] | None = None
        self._activation_task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._decide_now: bool = False

        # Metrics
        self._ticks: int = 0
        self._investigations_started: int = 0
        self._investigations_completed: int = 0
        self._pauses: int = 0
        self._resumes: int = 0
        self._fix_suggestions: int = 0

        self._logger = logger.bind(system="decision", component="decision_engine")

    # ─── State Access ────────────────────────────────────────────────

    def investigation(self) -> InvestigationState:
        raw = self._state.get(KEY_INVESTIGATION)
        if not isinstance(raw, dict):
            return InvestigationState()
        return InvestigationState.model_validate(raw)

    async def _write_investigation(self, investigation: InvestigationState) -> None:
        await self._state.set(
            KEY_INVESTIGATION, investigation.model_dump(mode="json"), trigger=TRIGGER,
        )

    def _app_status(self) -> str | None:
        status = self._state.get(KEY_APP_STATUS)
        return str(status) if status else None

    # ─── Questions ───────────────────────────────────────────────────

    def should_start_investigation(self) -> Decision:
        investigation = self.investigation()
        if investigation.status in (InvestigationStatus.STARTING, InvestigationStatus.ACTIVE):
            return Decision(
                should=False, reason="Investigation already in progress", confidence=1.0,
            )

        completed_at = investigation.last_completed_at
        if investigation.status == InvestigationStatus.COMPLETED and completed_at is not None:
            elapsed = self._clock() - completed_at
            if elapsed <= self._config.cooldown_ms:
                return Decision(
                    should=False,
                    reason=(
                        f"Cooldown period after last investigation "
                        f"({elapsed}ms of {self._config.cooldown_ms}ms)"
                    ),
                    confidence=1.0,
                )

        active = self._registry.get_active_issues()
        if not active:
            return Decision(should=False, reason="No active issues", confidence=1.0)

        critical = _by_severity(active, IssueSeverity.CRITICAL)
        high = _by_severity(active, IssueSeverity.HIGH)
        if critical:
            priority, confidence = "critical", 0.95
        elif high:
            priority, confidence = "high", 0.85
        else:
            priority, confidence = "medium", 0.70

        return Decision(
            should=True,
            reason=(
                f"{len(active)} active issue(s) detected "
                f"({len(critical)} critical, {len(high)} high)"
            ),
            confidence=confidence,
            priority=priority,
            issue_ids=issue_ids(active),
        )

    def should_pause_app(self) -> Decision:
        status = self._app_status()
        if status is None:
            return Decision(should=False, reason="App state not available", confidence=0.5)
        if status == AppStatus.PAUSED:
            return Decision(should=False, reason="App already paused", confidence=1.0)

        active = self._registry.get_active_issues()
        if self.investigation().status == InvestigationStatus.COMPLETED and active:
            return Decision(
                should=True,
                reason=f"Investigation complete, {len(active)} issue(s) found",
                confidence=0.95,
                priority="high",
                issue_ids=issue_ids(active),
            )

        critical = _by_severity(active, IssueSeverity.CRITICAL)
        if critical:
            return Decision(
                should=True,
                reason=f"{len(critical)} critical issue(s) detected",
                confidence=0.90,
                priority="critical",
                issue_ids=issue_ids(critical),
            )

        return Decision(should=False, reason="No reason to pause", confidence=1.0)

    def should_resume_app(self) -> Decision:
        status = self._app_status()
        if status is None:
            return Decision(should=False, reason="App state not available", confidence=0.5)
        if status != AppStatus.PAUSED:
            return Decision(should=False, reason="App not paused", confidence=1.0)

        verification = self._state.get(KEY_VERIFICATION_STATUS)
        if verification == "completed" and not self._registry.get_active_issues():
            return Decision(
                should=True,
                reason="Verification passed, no issues detected",
                confidence=0.95,
                priority="high",
            )

        return Decision(
            should=False,
            reason="Waiting for verification or issues still active",
            confidence=0.8,
        )

    def what_fixes_to_try(self) -> list[FixPlan]:
        """Knowledge-base suggestions for every active issue, highest priority first."""
        plans: list[FixPlan] = []
        for issue in self._registry.get_active_issues():
            suggested = self._fixes.get_suggested_fixes(issue)
            plans.append(
                FixPlan(
                    issue_id=issue.id,
                    issue_type=issue.type,
                    priority=issue.priority,
                    suggestions=suggested.should_try,
                    avoid=suggested.should_not_try,
                    confidence=suggested.confidence,
                )
            )
        plans.sort(key=lambda p: p.priority, reverse=True)
        return plans

    def what_to_avoid(self) -> list[AvoidEntry]:
        """Failed methods across all active issues, one entry per method."""
        avoid: dict[str, AvoidEntry] = {}
        for issue in self._registry.get_active_issues():
            for failed in self._fixes.get_suggested_fixes(issue).should_not_try:
                entry = avoid.get(failed.method)
                if entry is None:
                    entry = AvoidEntry(method=failed.method, reason=failed.reason)
                    avoid[failed.method] = entry
                entry.issue_ids.append(issue.id)
        return list(avoid.values())

    def whats_the_priority(self) -> PriorityAssessment:
        active = self._registry.get_active_issues()
        if not active:
            return PriorityAssessment(
                priority="low", action=RecommendedAction.MONITOR, reason="No active issues",
            )

        critical = _by_severity(active, IssueSeverity.CRITICAL)
        if critical:
            return PriorityAssessment(
                priority="critical",
                action=RecommendedAction.INVESTIGATE_AND_FIX,
                reason=f"{len(critical)} critical issue(s)",
                issue_ids=issue_ids(critical),
            )

        high = _by_severity(active, IssueSeverity.HIGH)
        if high:
            return PriorityAssessment(
                priority="high",
                action=RecommendedAction.INVESTIGATE,
                reason=f"{len(high)} high severity issue(s)",
                issue_ids=issue_ids(high),
            )

        return PriorityAssessment(
            priority="medium",
            action=RecommendedAction.MONITOR,
            reason=f"{len(active)} issue(s) detected",
            issue_ids=issue_ids(active),
        )

    # ─── Decide & Execute ────────────────────────────────────────────

    def make_decisions(self) -> DecisionSet:
        """Answer every question against current state. No side effects."""
        return DecisionSet(
            investigation=self.should_start_investigation(),
            pause=self.should_pause_app(),
            resume=self.should_resume_app(),
            fixes=self.what_fixes_to_try(),
            avoid=self.what_to_avoid(),
            priority=self.whats_the_priority(),
            timestamp=self._clock(),
        )

    async def execute_decisions(self, decisions: DecisionSet) -> None:
        if decisions.investigation.should:
            await self.start_investigation(decisions.investigation)
        if decisions.pause.should:
            await self.pause_app(decisions.pause)
        if decisions.resume.should:
            await self.resume_app(decisions.resume)
        if decisions.fixes:
            self._fix_suggestions += 1
            await self._emit(
                PitbossEventType.FIX_SUGGESTIONS,
                {"fixes": [plan.model_dump(mode="json") for plan in decisions.fixes]},
            )

    async def tick(self) -> DecisionSet:
        decisions = self.make_decisions()
        await self.execute_decisions(decisions)
        self._ticks += 1
        return decisions

    # ─── Actions ─────────────────────────────────────────────────────

    async def start_investigation(self, decision: Decision | None = None) -> bool:
        """Begin an investigation. Returns False if one is already running."""
        investigation = self.investigation()
        if investigation.status in (InvestigationStatus.STARTING, InvestigationStatus.ACTIVE):
            self._logger.debug("investigation_already_running", status=investigation.status.value)
            return False

        if decision is None:
            active = self._registry.get_active_issues()
            decision = Decision(
                should=True,
                reason="Investigation requested",
                confidence=1.0,
                issue_ids=issue_ids(active),
            )

        timeout_s = self._config.investigation_timeout_s
        investigation.status = InvestigationStatus.STARTING
        investigation.start_time = self._clock()
        investigation.timeout_s = timeout_s
        investigation.issue_ids = list(decision.issue_ids)
        investigation.progress = 0.0
        investigation.time_remaining_s = timeout_s
        await self._write_investigation(investigation)
        self._investigations_started += 1

        self._activation_task = asyncio.create_task(
            self._activate_after_delay(), name="pitboss_investigation_activate",
        )

        self._logger.info(
            "investigation_started",
            reason=decision.reason,
            priority=decision.priority,
            issues=len(decision.issue_ids),
        )
        await self._emit(PitbossEventType.INVESTIGATION_STARTED, decision.model_dump(mode="json"))
        return True

    async def _activate_after_delay(self) -> None:
        try:
            await asyncio.sleep(self._config.activation_delay_s)
            if self.investigation().status == InvestigationStatus.STARTING:
                await self._state.set(
                    f"{KEY_INVESTIGATION}.status", InvestigationStatus.ACTIVE.value, trigger=TRIGGER,
                )
        except asyncio.CancelledError:
            return

    async def update_progress(self) -> None:
        """
        Advance an active investigation: rewrite progress, or complete it
        once the timeout has elapsed since start. Called only from the
        scheduler task (and directly by callers that drive it by hand).
        """
        investigation = self.investigation()
        if investigation.status != InvestigationStatus.ACTIVE or investigation.start_time is None:
            return

        timeout_s = investigation.timeout_s or self._config.investigation_timeout_s
        elapsed_s = (self._clock() - investigation.start_time) / 1000
        if elapsed_s >= timeout_s:
            await self.complete_investigation()
            return

        progress = elapsed_s / timeout_s * 100
        remaining = timeout_s - elapsed_s
        previous_remaining = (
            investigation.time_remaining_s
            if investigation.time_remaining_s is not None
            else timeout_s
        )
        if (
            abs(investigation.progress - progress) > _PROGRESS_STEP
            or abs(previous_remaining - remaining) > _REMAINING_STEP_S
        ):
            investigation.progress = round(progress, 2)
            investigation.time_remaining_s = round(remaining, 3)
            await self._write_investigation(investigation)

    async def complete_investigation(self) -> InvestigationRecord:
        investigation = self.investigation()
        now = self._clock()
        active = self._registry.get_active_issues()
        start = investigation.start_time if investigation.start_time is not None else now

        record = InvestigationRecord(
            start_time=start,
            completed_at=now,
            duration_s=(now - start) / 1000,
            issues_found=len(active),
        )
        investigation.history.append(record)
        investigation.history = investigation.history[-_MAX_INVESTIGATION_HISTORY:]
        investigation.status = InvestigationStatus.COMPLETED
        investigation.progress = 100.0
        investigation.time_remaining_s = 0.0
        investigation.issue_ids = issue_ids(active)
        await self._write_investigation(investigation)
        self._investigations_completed += 1

        self._logger.info(
            "investigation_completed",
            duration_s=record.duration_s,
            issues_found=record.issues_found,
        )

        pause = self.should_pause_app()
        if pause.should:
            await self.pause_app(pause)

        await self._emit(
            PitbossEventType.INVESTIGATION_COMPLETED,
            {"issueIds": issue_ids(active), "duration": record.duration_s},
        )
        return record

    async def pause_app(self, decision: Decision) -> None:
        await self._state.set(KEY_APP_STATUS, AppStatus.PAUSED.value, trigger=TRIGGER)
        await self._state.set(KEY_APP_PAUSED_REASON, decision.reason, trigger=TRIGGER)
        await self._state.set(KEY_APP_PAUSED_AT, self._clock(), trigger=TRIGGER)
        self._pauses += 1
        self._logger.warning("app_pause_requested", reason=decision.reason)
        await self._emit(PitbossEventType.UNITY_PAUSE_REQUESTED, decision.model_dump(mode="json"))

    async def resume_app(self, decision: Decision) -> None:
        await self._state.set(KEY_APP_STATUS, AppStatus.RUNNING.value, trigger=TRIGGER)
        await self._state.set(KEY_APP_PAUSED_REASON, None, trigger=TRIGGER)
        await self._state.set(KEY_APP_PAUSED_AT, None, trigger=TRIGGER)
        self._resumes += 1
        self._logger.info("app_resume_requested", reason=decision.reason)
        await self._emit(PitbossEventType.UNITY_RESUME_REQUESTED, decision.model_dump(mode="json"))

    # ─── Event Handlers ──────────────────────────────────────────────

    async def on_state_changed(self, event: PitbossEvent) -> None:
        """Wake the scheduler for investigation changes made by anyone else."""
        if event.data.get("trigger") == TRIGGER:
            return
        if str(event.data.get("path", "")).startswith(KEY_INVESTIGATION):
            self._wake.set()

    async def on_issue_detected(self, event: PitbossEvent) -> None:
        """Run a full decision pass on the scheduler's next wake-up."""
        self._decide_now = True
        self._wake.set()

    # ─── Scheduler ───────────────────────────────────────────────────

    def start(self) -> None:
        """Start the scheduler task. Idempotent."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._run(), name="pitboss_decision_loop")
        self._logger.info("decision_engine_started", tick_interval_s=self._config.tick_interval_s)

    async def stop(self) -> None:
        """Cancel the scheduler and any pending activation. Safe to repeat."""
        tasks = [self._loop_task, self._activation_task]
        self._loop_task = None
        self._activation_task = None
        stopped = False
        for task in tasks:
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                stopped = True
        if stopped:
            self._logger.info("decision_engine_stopped", ticks=self._ticks)

    async def destroy(self) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._config.tick_interval_s
        while True:
            try:
                timeout = max(0.0, next_tick - loop.time())
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=timeout)
                self._wake.clear()

                due = self._decide_now or loop.time() >= next_tick
                if due:
                    self._decide_now = False
                    next_tick = loop.time() + self._config.tick_interval_s

                await self.update_progress()
                if due:
                    await self.tick()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                self._logger.warning("decision_loop_error", error=str(exc))

    async def _emit(self, event_type: PitbossEventType, data: dict[str, Any]) -> None:
        if self._bus is None:
            return
        await self._bus.publish(event_type, data, source_system="decision")

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "ticks": self._ticks,
            "investigations_started": self._investigations_started,
            "investigations_completed": self._investigations_completed,
            "pauses": self._pauses,
            "resumes": self._resumes,
            "fix_suggestions": self._fix_suggestions,
            "investigation_status": self.investigation().status.value,
            "running": self.is_running,
        }
