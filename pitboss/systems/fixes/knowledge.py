"""
Pitboss — Fix Knowledge Base

The monitor's memory of remediation. Every fix attempt is recorded once
and folded into three views:

  1. METHOD STATS   — lifetime successes/failures per fix method
  2. PATTERN KNOWLEDGE — per issue pattern, which method works best
  3. OUTCOME LEDGER — which (issue, method) pairs failed or succeeded

The ledger is what keeps the loop honest: a method that failed against an
issue is never suggested for that issue again, however well it did
elsewhere.
"""

from __future__ import annotations

import math
from collections import OrderedDict, deque
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from pitboss.config import FixKnowledgeConfig
from pitboss.errors import PersistenceError
from pitboss.events.types import PitbossEvent, PitbossEventType
from pitboss.primitives.common import Clock, new_id, now_ms
from pitboss.primitives.issue import Issue
from pitboss.systems.fixes.types import (
    AvoidedFix,
    FailedFixSummary,
    FixAttempt,
    FixResult,
    FixSuggestion,
    KnowledgeEntry,
    MethodAlternative,
    MethodStats,
    OutcomeRecord,
    SuggestedFixes,
)

if TYPE_CHECKING:
    from pitboss.clients.repository import StateRepository
    from pitboss.events.bus import EventBus
    from pitboss.systems.collaborators.issues import IssueRegistry
    from pitboss.systems.collaborators.state_store import StateStore

logger = structlog.get_logger()

# Persisted keys
KEY_KNOWLEDGE = "fixes.knowledge"
KEY_ATTEMPTS = "fixes.attempts"
KEY_FAILURES = "fixes.failures"
KEY_SUCCESSES = "fixes.successes"
KEY_METHODS = "fixes.methodStats"
KEY_WORKING = "fixes.workingFixes"

# Detail keys that identify the same table, seat or hand across issues
_IDENTITY_KEYS: tuple[str, ...] = ("tableId", "playerId", "gameId", "handId")
# Issue-type families that share remedies
_TYPE_FAMILIES: tuple[str, ...] = ("CHIP", "POT")


def _duration(value: Any) -> float:
    """Caller-supplied duration in seconds; missing or non-numeric counts as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return 0.0
    return duration if math.isfinite(duration) else 0.0


def pattern_key(issue: Issue) -> str:
    """Issue type plus markers for the table, player and phase it involved."""
    key = issue.type
    if issue.table_id:
        key += "_table"
    if issue.player_id:
        key += "_player"
    if issue.phase:
        key += f"_{issue.phase}"
    return key


def recompute_method_stats(attempts: Iterable[FixAttempt]) -> dict[str, MethodStats]:
    """Rebuild per-method stats from a batch of attempts."""
    stats: dict[str, MethodStats] = {}
    for attempt in attempts:
        stats.setdefault(attempt.fix_method, MethodStats()).record(attempt.result)
    return stats


def _is_similar(issue: Issue, record: OutcomeRecord) -> bool:
    if record.issue_type == issue.type:
        return True
    for key in _IDENTITY_KEYS:
        value = issue.details.get(key)
        if value is not None and record.issue_details.get(key) == value:
            return True
    issue_type = issue.type.upper()
    other_type = record.issue_type.upper()
    return any(f in issue_type and f in other_type for f in _TYPE_FAMILIES)


class FixKnowledgeBase:
    """
    Records fix attempts and answers "what should be tried next".

    All maps are owned here. Other components read through the query
    methods and never mutate.
    """

    def __init__(
        self,
        repository: StateRepository,
        config: FixKnowledgeConfig | None = None,
        issue_registry: IssueRegistry | None = None,
        state_store: StateStore | None = None,
        event_bus: EventBus | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._repository = repository
        self._config = config or FixKnowledgeConfig()
        self._registry = issue_registry
        self._state_store = state_store
        self._bus = event_bus
        self._clock = clock

        self._attempts: deque[FixAttempt] = deque(maxlen=self._config.max_attempts)
        self._method_stats: dict[str, MethodStats] = {}
        self._knowledge: dict[str, KnowledgeEntry] = {}
        # (issue_id, method) → record, in first-seen order
        self._failures: OrderedDict[tuple[str, str], OutcomeRecord] = OrderedDict()
        self._successes: OrderedDict[tuple[str, str], OutcomeRecord] = OrderedDict()
        self._working_fixes: list[str] = []

        self._logger = logger.bind(system="fixes", component="knowledge_base")

    # ─── Lifecycle ───────────────────────────────────────────────────

    def initialize(self) -> None:
        """Load persisted knowledge. Storage errors propagate."""
        self._repository.initialize()

        key = KEY_ATTEMPTS
        try:
            for raw in self._repository.load(KEY_ATTEMPTS) or []:
                self._attempts.append(FixAttempt.model_validate(raw))

            key = KEY_KNOWLEDGE
            knowledge = self._repository.load(KEY_KNOWLEDGE) or {}
            self._knowledge = {
                pattern: KnowledgeEntry.model_validate(raw) for pattern, raw in knowledge.items()
            }

            key = KEY_FAILURES
            for raw in self._repository.load(KEY_FAILURES) or []:
                record = OutcomeRecord.model_validate(raw)
                self._failures[(record.issue_id, record.method)] = record
            key = KEY_SUCCESSES
            for raw in self._repository.load(KEY_SUCCESSES) or []:
                record = OutcomeRecord.model_validate(raw)
                self._successes[(record.issue_id, record.method)] = record

            key = KEY_METHODS
            methods = self._repository.load(KEY_METHODS)
            if methods is None:
                self._method_stats = recompute_method_stats(self._attempts)
            else:
                self._method_stats = {
                    method: MethodStats.model_validate(raw) for method, raw in methods.items()
                }
        except ValidationError as exc:
            raise PersistenceError(f"Malformed record under {key}: {exc}", key=key) from exc
        self._working_fixes = list(self._repository.load(KEY_WORKING) or [])

        self._logger.info(
            "fix_knowledge_loaded",
            attempts=len(self._attempts),
            patterns=len(self._knowledge),
            failures=len(self._failures),
            successes=len(self._successes),
        )

    def shutdown(self) -> None:
        self.save()
        self._logger.info("fix_knowledge_saved", attempts=len(self._attempts))

    def save(self) -> None:
        self._repository.save(
            KEY_KNOWLEDGE,
            {p: e.model_dump(mode="json") for p, e in self._knowledge.items()},
        )
        self._repository.save(KEY_ATTEMPTS, [a.model_dump(mode="json") for a in self._attempts])
        self._repository.save(
            KEY_FAILURES, [r.model_dump(mode="json") for r in self._failures.values()],
        )
        self._repository.save(
            KEY_SUCCESSES, [r.model_dump(mode="json") for r in self._successes.values()],
        )
        self._repository.save(
            KEY_METHODS,
            {m: s.model_dump(mode="json") for m, s in self._method_stats.items()},
        )
        self._repository.save(KEY_WORKING, list(self._working_fixes))

    # ─── Recording ───────────────────────────────────────────────────

    async def record_attempt(
        self,
        issue_id: str,
        method: str,
        details: dict[str, Any] | None = None,
        result: FixResult | str = FixResult.SUCCESS,
    ) -> FixAttempt:
        """
        Record one fix attempt and fold it into every view.

        The issue is looked up in the registry for its type and details;
        an issue the registry no longer knows is recorded as "unknown"
        unless the details name an issueType.
        """
        result = FixResult(result)
        details = dict(details or {})
        now = self._clock()

        issue = self._registry.get_issue(issue_id) if self._registry is not None else None
        issue_type = issue.type if issue is not None else str(details.get("issueType", "unknown"))
        snapshot = self._state_store.snapshot("game") if self._state_store is not None else None

        attempt = FixAttempt(
            id=new_id(),
            issue_id=issue_id,
            issue_type=issue_type,
            fix_method=method,
            fix_details=details,
            result=result,
            timestamp=now,
            state_snapshot=snapshot,
            duration=_duration(details.get("duration")),
        )
        self._attempts.append(attempt)

        stats = self._method_stats.setdefault(method, MethodStats())
        stats.record(result)

        pattern = pattern_key(issue) if issue is not None else issue_type
        self._update_knowledge(pattern, method, result, now)

        issue_details = dict(issue.details) if issue is not None else {}
        if result == FixResult.SUCCESS:
            self._mark(self._successes, attempt, issue_details)
            if stats.rate > self._config.working_fix_threshold and method not in self._working_fixes:
                self._working_fixes.append(method)
        elif result == FixResult.FAILURE:
            self._mark(self._failures, attempt, issue_details)

        self.save()

        self._logger.info(
            "fix_attempt_recorded",
            issue_id=issue_id,
            issue_type=issue_type,
            method=method,
            result=result.value,
            method_rate=round(stats.rate, 3),
        )

        payload = {"attempt": attempt.model_dump(mode="json")}
        await self._emit(PitbossEventType.ATTEMPT_RECORDED, payload)
        if result == FixResult.SUCCESS:
            await self._emit(PitbossEventType.FIX_SUCCEEDED, payload)
        elif result == FixResult.FAILURE:
            await self._emit(PitbossEventType.FIX_FAILED, payload)

        return attempt

    def _mark(
        self,
        ledger: OrderedDict[tuple[str, str], OutcomeRecord],
        attempt: FixAttempt,
        issue_details: dict[str, Any],
    ) -> None:
        key = (attempt.issue_id, attempt.fix_method)
        record = ledger.get(key)
        if record is None:
            record = OutcomeRecord(
                issue_id=attempt.issue_id,
                method=attempt.fix_method,
                first_attempt=attempt.timestamp,
                issue_type=attempt.issue_type,
                issue_details=issue_details,
            )
            ledger[key] = record
        record.count += 1
        record.last_attempt = attempt.timestamp

    def _update_knowledge(
        self, pattern: str, method: str, result: FixResult, timestamp: int,
    ) -> None:
        entry = self._knowledge.get(pattern)
        if entry is None:
            entry = KnowledgeEntry(pattern=pattern)
            self._knowledge[pattern] = entry

        alt = next((a for a in entry.alternatives if a.method == method), None)
        if alt is None:
            alt = MethodAlternative(method=method)
            entry.alternatives.append(alt)

        alt.attempts += 1
        entry.attempts += 1
        if result == FixResult.SUCCESS:
            alt.successes += 1
            alt.last_success = timestamp
        elif result == FixResult.FAILURE:
            alt.failures += 1
        decided = alt.successes + alt.failures
        alt.success_rate = alt.successes / decided if decided else 0.0

        # Stable: ties keep the order methods were first tried in
        entry.alternatives.sort(key=lambda a: a.success_rate, reverse=True)
        if result == FixResult.SUCCESS or entry.best_method is None:
            best = entry.alternatives[0]
            entry.best_method = best.method
            entry.success_rate = best.success_rate
        else:
            current = next(a for a in entry.alternatives if a.method == entry.best_method)
            entry.success_rate = current.success_rate

    # ─── Queries ─────────────────────────────────────────────────────

    def get_suggested_fixes(self, issue: Issue) -> SuggestedFixes:
        """
        Rank methods to try for an issue, and list the ones to avoid.

        Candidates are methods that succeeded on similar issues (same type,
        a shared table/player/hand, or the same CHIP/POT family). Anything
        that already failed against this exact issue is excluded.
        """
        failed_here = {method for (issue_id, method) in self._failures if issue_id == issue.id}

        candidates: OrderedDict[str, OutcomeRecord] = OrderedDict()
        for (_, method), record in self._successes.items():
            if method in failed_here or method in candidates:
                continue
            if _is_similar(issue, record):
                candidates[method] = record

        should_try: list[FixSuggestion] = []
        for method, record in candidates.items():
            rate = self.get_success_rate(method)
            should_try.append(
                FixSuggestion(
                    method=method,
                    confidence=rate,
                    reason=f"Worked for similar issue: {record.issue_type}",
                    success_rate=rate,
                )
            )

        entry = self._knowledge.get(pattern_key(issue)) or self._knowledge.get(issue.type)
        if (
            entry is not None
            and entry.best_method is not None
            and entry.success_rate > self._config.knowledge_merge_threshold
            and entry.best_method not in failed_here
            and entry.best_method not in candidates
        ):
            should_try.append(
                FixSuggestion(
                    method=entry.best_method,
                    confidence=entry.success_rate,
                    reason=f"Best known fix for pattern {entry.pattern}",
                    success_rate=entry.success_rate,
                )
            )

        should_try.sort(key=lambda s: s.confidence, reverse=True)

        should_not_try = [
            AvoidedFix(
                method=record.method,
                reason=f"Failed {record.count} time(s)",
                count=record.count,
                last_attempt=record.last_attempt,
            )
            for (issue_id, _), record in self._failures.items()
            if issue_id == issue.id
        ]

        return SuggestedFixes(
            should_try=should_try,
            should_not_try=should_not_try,
            confidence=should_try[0].confidence if should_try else 0.0,
        )

    def get_success_rate(self, method: str) -> float:
        stats = self._method_stats.get(method)
        return stats.rate if stats is not None else 0.0

    def get_method_stats(self, method: str) -> MethodStats | None:
        stats = self._method_stats.get(method)
        return stats.model_copy() if stats is not None else None

    def get_knowledge(self, pattern: str) -> KnowledgeEntry | None:
        entry = self._knowledge.get(pattern)
        return entry.model_copy(deep=True) if entry is not None else None

    def get_working_fixes(self) -> list[KnowledgeEntry]:
        """Pattern knowledge whose best method works more often than not."""
        working = [
            e.model_copy(deep=True)
            for e in self._knowledge.values()
            if e.success_rate > self._config.knowledge_merge_threshold
        ]
        working.sort(key=lambda e: e.success_rate, reverse=True)
        return working

    @property
    def working_methods(self) -> list[str]:
        return list(self._working_fixes)

    def get_failed_fixes(self) -> list[FailedFixSummary]:
        """Failure ledger grouped by method, most-failed first."""
        grouped: dict[str, FailedFixSummary] = {}
        for record in self._failures.values():
            summary = grouped.setdefault(record.method, FailedFixSummary(method=record.method, count=0))
            summary.count += record.count
            summary.issues.append(record.issue_id)
            summary.last_attempt = max(summary.last_attempt, record.last_attempt)
        return sorted(grouped.values(), key=lambda s: s.count, reverse=True)

    def get_recent_attempts(self, limit: int = 10) -> list[FixAttempt]:
        """Most recent attempts, newest first."""
        items = list(self._attempts)[-limit:]
        items.reverse()
        return items

    def get_attempts_for_issue(self, issue_id: str) -> list[FixAttempt]:
        return [a for a in self._attempts if a.issue_id == issue_id]

    def has_failed(self, issue_id: str, method: str) -> bool:
        return (issue_id, method) in self._failures

    @property
    def attempts(self) -> list[FixAttempt]:
        return list(self._attempts)

    @property
    def knowledge(self) -> dict[str, KnowledgeEntry]:
        return {p: e.model_copy(deep=True) for p, e in self._knowledge.items()}

    # ─── Events ──────────────────────────────────────────────────────

    async def on_issue_detected(self, event: PitbossEvent) -> None:
        """Publish suggestions for a freshly detected issue."""
        issue = Issue.model_validate(event.data["issue"])
        suggestions = self.get_suggested_fixes(issue)
        await self._emit(
            PitbossEventType.FIX_SUGGESTION,
            {"issueId": issue.id, "suggestions": suggestions.model_dump(mode="json")},
        )

    async def _emit(self, event_type: PitbossEventType, data: dict[str, Any]) -> None:
        if self._bus is None:
            return
        await self._bus.publish(event_type, data, source_system="fixes")

    # ─── Stats ───────────────────────────────────────────────────────

    @property
    def stats(self) -> dict[str, Any]:
        successes = sum(s.successes for s in self._method_stats.values())
        failures = sum(s.failures for s in self._method_stats.values())
        decided = successes + failures
        return {
            "total_attempts": len(self._attempts),
            "successes": successes,
            "failures": failures,
            "success_rate": successes / decided if decided else 0.0,
            "methods": len(self._method_stats),
            "patterns": len(self._knowledge),
            "working_fixes": len(self._working_fixes),
            "failed_pairs": len(self._failures),
        }
