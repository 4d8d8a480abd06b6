"""
Pitboss — Service

Wires the monitoring loop together on one event bus:

  stateChanged    → causal analyzer (history), decision engine (wake)
  issueDetected   → causal analyzer (root cause), knowledge base
                    (fix suggestion), decision engine (decide now)
  attemptRecorded → learning engine (patterns)

Interface:
  initialize()  — load persisted knowledge, subscribe, start loops
  shutdown()    — stop loops, flush knowledge, close storage
  health()      — self-health report
"""

from __future__ import annotations

from typing import Any

import structlog

from pitboss.clients.repository import StateRepository, create_repository
from pitboss.config import PitbossConfig
from pitboss.events.bus import EventBus
from pitboss.events.types import PitbossEventType
from pitboss.primitives.common import Clock, now_ms
from pitboss.systems.causal.analyzer import CausalAnalyzer
from pitboss.systems.collaborators.dependency_graph import DependencyGraph
from pitboss.systems.collaborators.issues import InMemoryIssueRegistry
from pitboss.systems.collaborators.state_store import InMemoryStateStore
from pitboss.systems.decision.engine import KEY_APP_STATUS, TRIGGER, DecisionEngine
from pitboss.systems.decision.types import AppStatus
from pitboss.systems.fixes.knowledge import FixKnowledgeBase
from pitboss.systems.learning.engine import LearningEngine

logger = structlog.get_logger()


class PitbossService:
    """
    Self-monitoring for the game server.

    Collaborators default to the in-memory implementations; pass your own
    to monitor a real state store or issue source.
    """

    def __init__(
        self,
        config: PitbossConfig | None = None,
        repository: StateRepository | None = None,
        state_store: InMemoryStateStore | None = None,
        issue_registry: InMemoryIssueRegistry | None = None,
        dependency_graph: DependencyGraph | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._config = config or PitbossConfig()
        self._repository = repository or create_repository(
            self._config.persistence.backend, self._config.persistence.path,
        )

        self.event_bus = EventBus(
            callback_timeout_s=self._config.event_bus.callback_timeout_s,
            recent_buffer_size=self._config.event_bus.recent_buffer_size,
        )
        self.state_store = state_store or InMemoryStateStore(event_bus=self.event_bus, clock=clock)
        self.issue_registry = issue_registry or InMemoryIssueRegistry(
            event_bus=self.event_bus, clock=clock,
        )
        self.dependency_graph = dependency_graph or DependencyGraph.default()

        self.fix_knowledge = FixKnowledgeBase(
            self._repository,
            config=self._config.fixes,
            issue_registry=self.issue_registry,
            state_store=self.state_store,
            event_bus=self.event_bus,
            clock=clock,
        )
        self.causal_analyzer = CausalAnalyzer(
            config=self._config.causal,
            issue_registry=self.issue_registry,
            dependency_graph=self.dependency_graph,
            event_bus=self.event_bus,
            clock=clock,
        )
        self.learning_engine = LearningEngine(
            self._repository,
            config=self._config.learning,
            fix_knowledge=self.fix_knowledge,
            issue_registry=self.issue_registry,
            causal_analyzer=self.causal_analyzer,
            event_bus=self.event_bus,
            clock=clock,
        )
        self.decision_engine = DecisionEngine(
            self.state_store,
            self.issue_registry,
            self.fix_knowledge,
            event_bus=self.event_bus,
            config=self._config.decision,
            clock=clock,
        )

        self._initialized: bool = False
        self._subscribed: bool = False
        self._logger = logger.bind(system="pitboss", component="service")

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def initialize(self, start_loops: bool = True) -> None:
        """
        Load persisted knowledge and start monitoring.

        Persistence errors propagate: a monitor that cannot read its own
        history must not start.
        """
        if self._initialized:
            return

        self.fix_knowledge.initialize()
        self.learning_engine.initialize()

        if not self._subscribed:
            self._subscribe()

        if self.state_store.get(KEY_APP_STATUS) is None:
            await self.state_store.set(KEY_APP_STATUS, AppStatus.RUNNING.value, trigger=TRIGGER)

        if start_loops:
            self.decision_engine.start()
            self.learning_engine.start_confidence_monitoring()

        self._initialized = True
        self._logger.info(
            "pitboss_initialized",
            instance_id=self._config.instance_id,
            backend=self._config.persistence.backend,
            loops=start_loops,
        )

    def _subscribe(self) -> None:
        bus = self.event_bus
        bus.subscribe(PitbossEventType.STATE_CHANGED, self.causal_analyzer.on_state_changed)
        bus.subscribe(PitbossEventType.STATE_CHANGED, self.decision_engine.on_state_changed)
        bus.subscribe(PitbossEventType.ISSUE_DETECTED, self.causal_analyzer.on_issue_detected)
        bus.subscribe(PitbossEventType.ISSUE_DETECTED, self.fix_knowledge.on_issue_detected)
        bus.subscribe(PitbossEventType.ISSUE_DETECTED, self.decision_engine.on_issue_detected)
        bus.subscribe(PitbossEventType.ATTEMPT_RECORDED, self.learning_engine.on_attempt_recorded)
        self._subscribed = True

    async def shutdown(self) -> None:
        """Stop background loops and flush knowledge. Safe to call twice."""
        if not self._initialized:
            return
        self._initialized = False

        await self.decision_engine.stop()
        try:
            await self.learning_engine.shutdown()
            self.fix_knowledge.shutdown()
        finally:
            self._repository.close()

        self._logger.info("pitboss_shutdown", **self.fix_knowledge.stats)

    # ─── Health ──────────────────────────────────────────────────────

    async def health(self) -> dict[str, Any]:
        history = self.learning_engine.confidence_history
        if not self._initialized:
            status = "stopped"
        elif self.learning_engine.monitor_error is not None:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "decision_loop": self.decision_engine.is_running,
            "confidence": history[-1].confidence if history else None,
            "active_issues": len(self.issue_registry.get_active_issues()),
            "investigation": self.decision_engine.investigation().status.value,
            "app_status": self.state_store.get(KEY_APP_STATUS),
        }

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "event_bus": self.event_bus.stats,
            "fixes": self.fix_knowledge.stats,
            "causal": self.causal_analyzer.statistics,
            "learning": self.learning_engine.stats,
            "decision": self.decision_engine.stats,
            "issues": self.issue_registry.stats,
        }
