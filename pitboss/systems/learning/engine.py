"""
Pitboss — Learning Engine

Learns from the fix-attempt stream and keeps a 0–100 confidence score on
how well that learning is going. Whatever applies the fixes may try to
make the numbers look better than they are; the score resists that:

  1. PATTERNS       — every attempt updates "{category}:{value}" stats
  2. DERIVED        — successes feed causal chains, per-type solution
                      rankings, and cross-issue relationships
  3. CONFIDENCE     — six sub-metrics, weighted, with small-sample and
                      perfect-record penalties built into each
  4. MASKING        — suspicious patterns, jumps in the history, admitted
                      mistakes and weakened tests raise warnings
                      and lower the score
  5. AUTO-ADJUST    — low confidence emits concrete remediation directives
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from pitboss.config import LearningConfig
from pitboss.errors import PersistenceError
from pitboss.events.types import PitbossEvent, PitbossEventType
from pitboss.primitives.common import Clock, clamp, now_ms
from pitboss.primitives.issue import Issue
from pitboss.systems.fixes.types import FixAttempt, FixResult
from pitboss.systems.learning import masking
from pitboss.systems.learning.generalizer import (
    create_minimal_context,
    extract_log_pattern,
    generalize_state_pattern,
    pattern_similarity,
)
from pitboss.systems.learning.scoring import (
    METRIC_NAMES,
    HeuristicPatternScorer,
    HistoryMaskingDetector,
    MaskingDetector,
    PatternScorer,
    overall_confidence,
)
from pitboss.systems.learning.types import (
    AutoAdjustment,
    ChainLink,
    ConfidenceReport,
    ConfidenceSnapshot,
    ConfidenceTrend,
    CrossIssueEntry,
    FixQualityReport,
    LearningMetrics,
    LearningReport,
    MaskingVerdict,
    MaskingWarning,
    Mistake,
    MistakePattern,
    MistakePenalty,
    PatternAssessment,
    PatternCategory,
    PatternSolution,
    PatternStats,
    Prediction,
    RelatedIssueRef,
    SolutionAlternative,
    SolutionOptimization,
)

if TYPE_CHECKING:
    from pitboss.clients.repository import StateRepository
    from pitboss.events.bus import EventBus
    from pitboss.systems.causal.analyzer import CausalAnalyzer
    from pitboss.systems.collaborators.issues import IssueRegistry
    from pitboss.systems.fixes.knowledge import FixKnowledgeBase

logger = structlog.get_logger()

# Persisted keys
KEY_PATTERNS = "learning.patterns"
KEY_CAUSAL_CHAINS = "learning.causalChains"
KEY_SOLUTIONS = "learning.solutionOptimization"
KEY_CROSS_ISSUE = "learning.crossIssueLearning"
KEY_AUTO_ADJUSTMENTS = "learning.autoAdjustments"
KEY_MISTAKE_PATTERNS = "learning.mistakePatterns"

# Directive issued when a sub-metric falls under the auto-adjust threshold
_ADJUSTMENT_ACTIONS: dict[str, str] = {
    "pattern_recognition": "Increase pattern collection - need more fix attempts to learn patterns",
    "causal_analysis": "Improve causal chain tracking - need to track more state changes",
    "solution_optimization": "Increase fix attempt tracking - need more attempts to optimize solutions",
    "cross_issue_learning": "Correlate related issues - need more overlapping issue data",
    "prediction_accuracy": "Validate predictions - need more outcomes per pattern",
    "data_quality": "Improve data collection - need larger sample sizes and better data integrity",
}

# Trend compares the mean of the last window against the window before it
_TREND_WINDOW = 5
_TREND_THRESHOLD = 5.0
# Patterns this frequent and this unsuccessful predict recurring trouble
_PREDICTION_MIN_FREQUENCY = 5
_PREDICTION_MAX_SUCCESS = 0.3
_STATE_MATCH_SIMILARITY = 0.7
_MAX_MISTAKE_EXAMPLES = 10


def _issue_keys_overlap(first: Issue, second: Issue) -> bool:
    return bool(set(first.details) & set(second.details))


class LearningEngine:
    """
    Pattern learner and confidence scorer.

    Owns its pattern, chain, solution and cross-issue maps. Reads the fix
    knowledge base, issue registry and causal analyzer through their query
    methods only.
    """

    def __init__(
        self,
        repository: StateRepository,
        config: LearningConfig | None = None,
        fix_knowledge: FixKnowledgeBase | None = None,
        issue_registry: IssueRegistry | None = None,
        causal_analyzer: CausalAnalyzer | None = None,
        event_bus: EventBus | None = None,
        pattern_scorer: PatternScorer | None = None,
        masking_detector: MaskingDetector | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._repository = repository
        self._config = config or LearningConfig()
        self._fixes = fix_knowledge
        self._registry = issue_registry
        self._causal = causal_analyzer
        self._bus = event_bus
        self._scorer: PatternScorer = pattern_scorer or HeuristicPatternScorer(self._config.masking)
        self._detector: MaskingDetector = masking_detector or HistoryMaskingDetector(
            self._config.masking
        )
        self._clock = clock

        self._patterns: dict[str, PatternStats] = {}
        self._causal_chains: dict[str, list[ChainLink]] = {}
        self._solutions: dict[str, SolutionOptimization] = {}
        self._cross_issue: dict[str, CrossIssueEntry] = {}
        self._auto_adjustments: list[AutoAdjustment] = []
        self._mistake_patterns: dict[str, MistakePattern] = {}

        self._history: deque[ConfidenceSnapshot] = deque(maxlen=self._config.history_capacity)
        self._warnings: deque[MaskingWarning] = deque(maxlen=self._config.max_warnings)
        self._masking_detected: bool = False

        self._monitor_task: asyncio.Task[None] | None = None
        self._monitor_error: PersistenceError | None = None
        self._logger = logger.bind(system="learning", component="learning_engine")

    # ─── Lifecycle ───────────────────────────────────────────────────

    def initialize(self) -> None:
        """Load persisted learning. Storage errors propagate."""
        self._repository.initialize()

        key = KEY_PATTERNS
        try:
            raw_patterns = self._repository.load(KEY_PATTERNS) or {}
            self._patterns = {k: PatternStats.model_validate(v) for k, v in raw_patterns.items()}

            key = KEY_CAUSAL_CHAINS
            raw_chains = self._repository.load(KEY_CAUSAL_CHAINS) or {}
            self._causal_chains = {
                issue_id: [ChainLink.model_validate(link) for link in chain]
                for issue_id, chain in raw_chains.items()
            }

            key = KEY_SOLUTIONS
            raw_solutions = self._repository.load(KEY_SOLUTIONS) or {}
            self._solutions = {
                k: SolutionOptimization.model_validate(v) for k, v in raw_solutions.items()
            }

            key = KEY_CROSS_ISSUE
            raw_cross = self._repository.load(KEY_CROSS_ISSUE) or {}
            self._cross_issue = {
                k: CrossIssueEntry.model_validate(v) for k, v in raw_cross.items()
            }

            key = KEY_AUTO_ADJUSTMENTS
            self._auto_adjustments = [
                AutoAdjustment.model_validate(a)
                for a in self._repository.load(KEY_AUTO_ADJUSTMENTS) or []
            ]

            key = KEY_MISTAKE_PATTERNS
            raw_mistakes = self._repository.load(KEY_MISTAKE_PATTERNS) or {}
            self._mistake_patterns = {
                k: MistakePattern.model_validate(v) for k, v in raw_mistakes.items()
            }
        except ValidationError as exc:
            raise PersistenceError(f"Malformed record under {key}: {exc}", key=key) from exc

        self._logger.info(
            "learning_loaded",
            patterns=len(self._patterns),
            causal_chains=len(self._causal_chains),
            solutions=len(self._solutions),
            cross_issue=len(self._cross_issue),
        )

    async def shutdown(self) -> None:
        await self.stop_confidence_monitoring()
        self.save()

    def save(self) -> None:
        self._repository.save(
            KEY_PATTERNS, {k: p.model_dump(mode="json") for k, p in self._patterns.items()},
        )
        self._repository.save(
            KEY_CAUSAL_CHAINS,
            {
                issue_id: [link.model_dump(mode="json") for link in chain]
                for issue_id, chain in self._causal_chains.items()
            },
        )
        self._repository.save(
            KEY_SOLUTIONS, {k: s.model_dump(mode="json") for k, s in self._solutions.items()},
        )
        self._repository.save(
            KEY_CROSS_ISSUE, {k: c.model_dump(mode="json") for k, c in self._cross_issue.items()},
        )
        self._repository.save(
            KEY_AUTO_ADJUSTMENTS, [a.model_dump(mode="json") for a in self._auto_adjustments],
        )
        self._repository.save(
            KEY_MISTAKE_PATTERNS,
            {k: m.model_dump(mode="json") for k, m in self._mistake_patterns.items()},
        )

    # ─── Learning ────────────────────────────────────────────────────

    async def on_attempt_recorded(self, event: PitbossEvent) -> None:
        self.learn_from_attempt(FixAttempt.model_validate(event.data["attempt"]))

    def learn_from_attempt(self, attempt: FixAttempt) -> list[str]:
        """Fold one attempt into pattern stats. Returns the pattern keys touched."""
        success = attempt.result == FixResult.SUCCESS
        context = create_minimal_context(
            attempt.fix_details, attempt.issue_type, attempt.fix_method, attempt.result.value,
        )
        solution = PatternSolution(
            method=attempt.fix_method, result=attempt.result.value, timestamp=attempt.timestamp,
        )

        keys = self.extract_patterns(attempt)
        for key in keys:
            pattern = self._patterns.get(key)
            if pattern is None:
                pattern = PatternStats(key=key)
                self._patterns[key] = pattern
            pattern.record(success, solution, context, self._config.max_pattern_entries)

        if success:
            self._analyze_causal_chain(attempt)
            self._optimize_solution(attempt)
            self._learn_cross_issue(attempt)

        self.save()
        self._logger.debug(
            "attempt_learned",
            issue_type=attempt.issue_type,
            method=attempt.fix_method,
            result=attempt.result.value,
            patterns=len(keys),
        )
        return keys

    def extract_patterns(self, attempt: FixAttempt) -> list[str]:
        keys = [
            f"{PatternCategory.ISSUE_TYPE}:{attempt.issue_type}",
            f"{PatternCategory.FIX_METHOD}:{attempt.fix_method}",
        ]
        state_pattern = generalize_state_pattern(attempt.state_snapshot, attempt.issue_type)
        if state_pattern:
            keys.append(f"{PatternCategory.STATE}:{state_pattern}")
        logs = attempt.fix_details.get("logs")
        if isinstance(logs, list) and logs:
            log_pattern = extract_log_pattern(logs)
            if log_pattern:
                keys.append(f"{PatternCategory.LOG}:{log_pattern}")
        return keys

    def _method_rate(self, method: str) -> float:
        if self._fixes is not None:
            return self._fixes.get_success_rate(method)
        pattern = self._patterns.get(f"{PatternCategory.FIX_METHOD}:{method}")
        return pattern.success_rate if pattern is not None else 0.0

    def _analyze_causal_chain(self, attempt: FixAttempt) -> None:
        if self._registry is None:
            return
        issue = self._registry.get_issue(attempt.issue_id)
        if issue is None:
            return

        chain = [
            ChainLink(
                kind="fix",
                timestamp=attempt.timestamp,
                issue_type=issue.type,
                fix=attempt.fix_method,
                result=attempt.result.value,
            )
        ]
        if self._causal is not None:
            for link in self._causal.get_causal_chain(issue.id):
                chain.append(
                    ChainLink(
                        kind="state_change",
                        timestamp=link.timestamp,
                        path=link.path,
                        relationship=link.relationship.value,
                    )
                )
        for other in self._registry.get_active_issues():
            if other.id == issue.id:
                continue
            relationship = self._issue_relationship(issue, other)
            if relationship is not None:
                chain.append(
                    ChainLink(
                        kind="related_issue",
                        timestamp=other.first_seen,
                        issue_type=other.type,
                        relationship=relationship,
                    )
                )
        self._causal_chains[issue.id] = chain

    @staticmethod
    def _issue_relationship(issue: Issue, other: Issue) -> str | None:
        if (
            issue.root_cause is not None
            and other.root_cause is not None
            and issue.root_cause.path == other.root_cause.path
        ):
            return "same_root_cause"
        if issue.type == other.type:
            return "same_type"
        if _issue_keys_overlap(issue, other):
            return "related"
        return None

    def _optimize_solution(self, attempt: FixAttempt) -> None:
        entry = self._solutions.get(attempt.issue_type)
        if entry is None:
            entry = SolutionOptimization(issue_type=attempt.issue_type)
            self._solutions[attempt.issue_type] = entry

        entry.attempts += 1
        rate = self._method_rate(attempt.fix_method)

        alt = next((a for a in entry.alternatives if a.method == attempt.fix_method), None)
        if alt is None:
            entry.alternatives.append(
                SolutionAlternative(
                    method=attempt.fix_method, success_rate=rate, last_used=attempt.timestamp,
                )
            )
        else:
            alt.success_rate = rate
            alt.last_used = attempt.timestamp
        entry.alternatives.sort(key=lambda a: a.success_rate, reverse=True)

        best = entry.alternatives[0]
        entry.best_solution = best.method
        entry.success_rate = best.success_rate

    def _learn_cross_issue(self, attempt: FixAttempt) -> None:
        if self._registry is None:
            return
        issue = self._registry.get_issue(attempt.issue_id)
        if issue is None:
            return

        rate = self._method_rate(attempt.fix_method)
        for similar in self._registry.get_active_issues():
            if similar.id == issue.id or not _issue_keys_overlap(issue, similar):
                continue
            key = f"{issue.type}:{similar.type}"
            entry = self._cross_issue.get(key)
            if entry is None:
                entry = CrossIssueEntry(key=key)
                self._cross_issue[key] = entry

            entry.frequency += 1
            if not any(r.id == similar.id for r in entry.related_issues):
                entry.related_issues.append(RelatedIssueRef(id=similar.id, type=similar.type))
            if not any(s.method == attempt.fix_method for s in entry.common_solutions):
                entry.common_solutions.append(
                    SolutionAlternative(
                        method=attempt.fix_method, success_rate=rate, last_used=attempt.timestamp,
                    )
                )

    # ─── Confidence ──────────────────────────────────────────────────

    def calculate_metrics(self) -> LearningMetrics:
        """The six sub-metrics, each clamped to [0, 100]. Empty inputs score 0."""
        assessments = {key: self._scorer.score_pattern(p) for key, p in self._patterns.items()}
        self._flag_assessments("pattern", assessments.values())

        pattern_recognition = 0.0
        if self._patterns:
            scores = [
                min(p.frequency / 20, 1.0) * 50 + assessments[key].quality * 50
                for key, p in self._patterns.items()
            ]
            pattern_recognition = sum(scores) / len(scores)

        causal_analysis = 0.0
        chains = [c for c in self._causal_chains.values() if c]
        if chains:
            scores = [
                min(len(c) / 5, 1.0) * 50
                + (sum(1 for link in c if link.relationship) / len(c)) * 50
                for c in chains
            ]
            causal_analysis = sum(scores) / len(scores)

        solution_optimization = 0.0
        if self._solutions:
            solution_assessments = [
                (s, self._scorer.score_success_rate(s.success_rate, s.attempts))
                for s in self._solutions.values()
            ]
            self._flag_assessments("solution", (a for _, a in solution_assessments))
            scores = [
                a.quality * 60 + min(len(s.alternatives) / 3, 1.0) * 40
                for s, a in solution_assessments
            ]
            solution_optimization = sum(scores) / len(scores)

        cross_issue_learning = 0.0
        if self._cross_issue:
            scores = [
                min(len(c.related_issues) / 5, 1.0) * 50
                + min(len(c.common_solutions) / 3, 1.0) * 50
                for c in self._cross_issue.values()
            ]
            cross_issue_learning = sum(scores) / len(scores)

        prediction_accuracy = 0.0
        if assessments:
            prediction_accuracy = (
                sum(a.quality for a in assessments.values()) / len(assessments) * 100
            )

        return LearningMetrics(
            pattern_recognition=clamp(pattern_recognition),
            causal_analysis=clamp(causal_analysis),
            solution_optimization=clamp(solution_optimization),
            cross_issue_learning=clamp(cross_issue_learning),
            prediction_accuracy=clamp(prediction_accuracy),
            data_quality=clamp(self._data_quality()),
        )

    def _data_quality(self) -> float:
        """Mean saturation of the sample sizes behind each knowledge store."""
        factors: list[float] = []
        if self._patterns:
            avg = sum(p.frequency for p in self._patterns.values()) / len(self._patterns)
            factors.append(min(avg / 30, 1.0))
        chains = [c for c in self._causal_chains.values() if c]
        if chains:
            factors.append(min(sum(len(c) for c in chains) / len(chains) / 5, 1.0))
        if self._solutions:
            avg = sum(s.attempts for s in self._solutions.values()) / len(self._solutions)
            factors.append(min(avg / 20, 1.0))
        if self._cross_issue:
            avg = sum(c.frequency for c in self._cross_issue.values()) / len(self._cross_issue)
            factors.append(min(avg / 10, 1.0))
        return sum(factors) / len(factors) * 100 if factors else 0.0

    async def get_learning_confidence(self) -> ConfidenceReport:
        """
        Compute, record and act on the current confidence.

        Appends a snapshot to the history and, below the auto-adjust
        threshold, emits remediation directives.
        """
        self._masking_detected = False
        metrics = self.calculate_metrics()
        confidence = overall_confidence(metrics, self._config.metric_weights)

        flags = self._detector.detect_masking(
            list(self._history), metrics=metrics, solution_count=len(self._solutions),
        )
        for flag in flags:
            self._flag_masking("confidence", flag)

        snapshot = ConfidenceSnapshot(
            timestamp=self._next_timestamp(),
            confidence=confidence,
            metrics=metrics,
            masking_detected=self._masking_detected,
        )
        self._history.append(snapshot)

        if confidence < self._config.auto_adjust_threshold:
            await self._auto_adjust(confidence, metrics)

        return ConfidenceReport(
            overall_confidence=confidence,
            metrics=metrics,
            masking_detected=self._masking_detected,
            masking_warnings=list(self._warnings)[-5:],
            auto_adjustments=list(self._auto_adjustments),
            trend=self.get_confidence_trend(),
            sample_sizes={
                "patterns": len(self._patterns),
                "causal_chains": len(self._causal_chains),
                "solutions": len(self._solutions),
                "cross_issue": len(self._cross_issue),
            },
            timestamp=snapshot.timestamp,
        )

    def _next_timestamp(self) -> int:
        now = self._clock()
        if self._history:
            now = max(now, self._history[-1].timestamp)
        return now

    async def _auto_adjust(self, confidence: float, metrics: LearningMetrics) -> None:
        priority = "critical" if confidence < self._config.critical_threshold else "high"
        adjustments = [
            AutoAdjustment(type=name, action=_ADJUSTMENT_ACTIONS[name], priority=priority)
            for name in METRIC_NAMES
            if getattr(metrics, name) < self._config.auto_adjust_threshold
        ]
        self._auto_adjustments = adjustments
        self._repository.save(
            KEY_AUTO_ADJUSTMENTS, [a.model_dump(mode="json") for a in adjustments],
        )

        self._logger.warning(
            "auto_adjustment_triggered",
            confidence=round(confidence, 1),
            priority=priority,
            adjustments=[a.type for a in adjustments],
        )
        await self._emit(
            PitbossEventType.AUTO_ADJUSTMENT,
            {
                "confidence": confidence,
                "metrics": metrics.model_dump(mode="json"),
                "adjustments": [a.model_dump(mode="json") for a in adjustments],
            },
        )

    def get_confidence_trend(self) -> ConfidenceTrend:
        history = list(self._history)
        recent = history[-_TREND_WINDOW:]
        older = history[-2 * _TREND_WINDOW:-_TREND_WINDOW]
        if len(history) < 2 or not older:
            return ConfidenceTrend()

        change = (
            sum(s.confidence for s in recent) / len(recent)
            - sum(s.confidence for s in older) / len(older)
        )
        if change > _TREND_THRESHOLD:
            direction = "improving"
        elif change < -_TREND_THRESHOLD:
            direction = "declining"
        else:
            direction = "stable"
        return ConfidenceTrend(direction=direction, change=round(change, 2))

    # ─── Masking ─────────────────────────────────────────────────────

    def _flag_assessments(self, source: str, assessments: Any) -> None:
        for assessment in assessments:
            if isinstance(assessment, PatternAssessment) and assessment.flag:
                self._flag_masking(source, assessment.flag)

    def _flag_masking(self, source: str, reason: str) -> None:
        self._masking_detected = True
        self._warnings.append(
            MaskingWarning(timestamp=self._clock(), source=source, reason=reason)
        )
        self._logger.warning("masking_flagged", source=source, reason=reason)

    async def learn_from_mistake(self, mistake: Mistake) -> ConfidenceSnapshot | None:
        """
        Penalise confidence for an admitted or detected mistake.

        The penalised snapshot is appended after the latest one; history is
        never rewritten. Returns it, or None when there is no history yet.
        """
        thresholds = self._config.masking
        amount = thresholds.mistake_penalties.get(
            mistake.type, thresholds.default_mistake_penalty,
        )

        penalised: ConfidenceSnapshot | None = None
        if self._history:
            current = self._history[-1]
            penalised = ConfidenceSnapshot(
                timestamp=self._next_timestamp(),
                confidence=max(0.0, current.confidence - amount),
                metrics=current.metrics,
                masking_detected=True,
                penalty=MistakePenalty(reason=mistake.type, amount=amount),
            )
            self._history.append(penalised)

        self._flag_masking("ai_mistake", f"AI mistake: {mistake.type} - {mistake.details}")
        self._record_mistake_patterns(mistake)
        self._repository.save(
            KEY_MISTAKE_PATTERNS,
            {k: m.model_dump(mode="json") for k, m in self._mistake_patterns.items()},
        )

        self._logger.warning(
            "mistake_learned", mistake_type=mistake.type, penalty=amount,
        )
        await self._emit(
            PitbossEventType.AI_MISTAKE_LEARNED,
            {"mistake": mistake.model_dump(mode="json"), "penalty": amount},
        )
        return penalised

    def _record_mistake_patterns(self, mistake: Mistake) -> None:
        context = mistake.context
        keys: list[str] = []
        if context.get("problemType"):
            keys.append(f"problem_{context['problemType']}")
        if context.get("complexity"):
            keys.append(f"complexity_{context['complexity']}")
        if context.get("timePressure"):
            keys.append("time_pressure")

        for key in keys:
            entry = self._mistake_patterns.get(key)
            if entry is None:
                entry = MistakePattern(pattern=key)
                self._mistake_patterns[key] = entry
            entry.mistakes.append(mistake.type)
            entry.mistakes = entry.mistakes[-_MAX_MISTAKE_EXAMPLES:]
            entry.frequency += 1

    def detect_test_masking(
        self,
        old_test: str | None,
        new_test: str | None,
        context: dict[str, Any] | None = None,
    ) -> MaskingVerdict:
        verdict = masking.detect_test_masking(old_test, new_test, context)
        if verdict.is_masking:
            self._flag_masking(
                "test_change", f"Test masking detected: {'; '.join(verdict.indicators)}",
            )
        return verdict

    def verify_fix_quality(
        self,
        fix: dict[str, Any],
        original_problem: dict[str, Any] | None = None,
    ) -> FixQualityReport:
        report = masking.verify_fix_quality(fix, original_problem)
        if report.score < self._config.masking.fix_quality_floor:
            self._flag_masking("fix_quality", f"Low fix quality: {'; '.join(report.issues)}")
        return report

    # ─── Prediction & Reporting ──────────────────────────────────────

    def predict_issues(self, current_state: dict[str, Any] | None = None) -> list[Prediction]:
        """Patterns that keep failing, plus state shapes that preceded failures."""
        predictions: list[Prediction] = []
        for key, pattern in self._patterns.items():
            if (
                pattern.frequency > _PREDICTION_MIN_FREQUENCY
                and pattern.success_rate < _PREDICTION_MAX_SUCCESS
            ):
                predictions.append(
                    Prediction(
                        pattern=key,
                        likelihood=min(pattern.frequency / 100, 1.0),
                        reason=(
                            f"Pattern {key} has high failure rate "
                            f"({pattern.success_rate * 100:.1f}%)"
                        ),
                        type="pattern_based",
                    )
                )

        if current_state:
            issue_type = str(current_state.get("issueType", "game_state"))
            state_pattern = generalize_state_pattern(current_state, issue_type)
            if state_pattern:
                current_key = f"{PatternCategory.STATE}:{state_pattern}"
                for key, pattern in self._patterns.items():
                    if not key.startswith(f"{PatternCategory.STATE}:"):
                        continue
                    if pattern.success_rate >= 0.5:
                        continue
                    similarity = pattern_similarity(current_key, key)
                    if similarity >= _STATE_MATCH_SIMILARITY:
                        predictions.append(
                            Prediction(
                                pattern=key,
                                likelihood=round(similarity * (1 - pattern.success_rate), 3),
                                reason=f"Current state resembles {key}, which fixes rarely resolve",
                                suggestion="Snapshot state and verify invariants before the next hand",
                                type="state_pattern",
                            )
                        )

        predictions.sort(key=lambda p: p.likelihood, reverse=True)
        return predictions

    async def get_learning_report(self) -> LearningReport:
        confidence = await self.get_learning_confidence()
        top = sorted(self._patterns.values(), key=lambda p: p.frequency, reverse=True)[:10]
        return LearningReport(
            confidence=confidence,
            patterns=len(self._patterns),
            causal_chains=len(self._causal_chains),
            solutions=len(self._solutions),
            cross_issue=len(self._cross_issue),
            mistake_patterns=len(self._mistake_patterns),
            top_patterns=[p.model_copy(deep=True) for p in top],
        )

    # ─── Accessors ───────────────────────────────────────────────────

    def get_pattern(self, key: str) -> PatternStats | None:
        pattern = self._patterns.get(key)
        return pattern.model_copy(deep=True) if pattern is not None else None

    def get_solution(self, issue_type: str) -> SolutionOptimization | None:
        entry = self._solutions.get(issue_type)
        return entry.model_copy(deep=True) if entry is not None else None

    def get_cross_issue(self, key: str) -> CrossIssueEntry | None:
        entry = self._cross_issue.get(key)
        return entry.model_copy(deep=True) if entry is not None else None

    def get_causal_chain(self, issue_id: str) -> list[ChainLink]:
        return [link.model_copy() for link in self._causal_chains.get(issue_id, [])]

    @property
    def confidence_history(self) -> list[ConfidenceSnapshot]:
        return list(self._history)

    @property
    def masking_warnings(self) -> list[MaskingWarning]:
        return list(self._warnings)

    @property
    def masking_detected(self) -> bool:
        return self._masking_detected

    @property
    def monitor_error(self) -> PersistenceError | None:
        """The persistence failure that stopped confidence monitoring, if any."""
        return self._monitor_error

    @property
    def auto_adjustments(self) -> list[AutoAdjustment]:
        return list(self._auto_adjustments)

    # ─── Monitoring ──────────────────────────────────────────────────

    def start_confidence_monitoring(self) -> None:
        """Recompute confidence on a fixed cadence. Idempotent."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(
            self._confidence_loop(), name="pitboss_confidence_monitor",
        )

    async def stop_confidence_monitoring(self) -> None:
        """
        Cancel the monitoring task. Safe to call when already stopped.

        If a persistence failure already ended the task, it is re-raised
        here, once.
        """
        task = self._monitor_task
        self._monitor_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            return
        if not task.cancelled() and (exc := task.exception()) is not None:
            raise exc

    async def stop(self) -> None:
        await self.stop_confidence_monitoring()

    async def _confidence_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.confidence_interval_s)
                report = await self.get_learning_confidence()
                self._logger.info(
                    "confidence_computed",
                    confidence=report.overall_confidence,
                    masking=report.masking_detected,
                    trend=report.trend.direction,
                )
            except asyncio.CancelledError:
                return
            except PersistenceError as exc:
                self._monitor_error = exc
                self._logger.error("confidence_persist_failed", error=str(exc), key=exc.key)
                raise
            except Exception as exc:
                self._logger.warning("confidence_loop_error", error=str(exc))

    async def _emit(self, event_type: PitbossEventType, data: dict[str, Any]) -> None:
        if self._bus is None:
            return
        await self._bus.publish(event_type, data, source_system="learning")

    @property
    def stats(self) -> dict[str, Any]:
        latest = self._history[-1].confidence if self._history else None
        return {
            "patterns": len(self._patterns),
            "causal_chains": len(self._causal_chains),
            "solutions": len(self._solutions),
            "cross_issue": len(self._cross_issue),
            "confidence_snapshots": len(self._history),
            "latest_confidence": latest,
            "masking_warnings": len(self._warnings),
            "monitoring": self._monitor_task is not None and not self._monitor_task.done(),
            "monitor_error": str(self._monitor_error) if self._monitor_error else None,
        }
