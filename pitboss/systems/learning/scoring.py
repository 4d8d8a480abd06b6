"""
Pitboss — Learning Scorers

The heuristics that decide how much a pattern, or the confidence history
as a whole, can be trusted. They sit behind two narrow interfaces so they
can be swapped for more principled statistics without touching the
engine:

  PatternScorer.score_pattern(pattern)       → quality in [0, 1] + flag
  MaskingDetector.detect_masking(history, …) → list of masking flags

The default implementations reward realistic, well-sampled outcomes and
penalise the signatures of gamed metrics: small samples with high success
rates, perfect records, sudden swings, and confidence that jumps faster
than the data behind it could justify.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from pitboss.config import MaskingThresholds
from pitboss.primitives.common import clamp
from pitboss.systems.learning.types import (
    ConfidenceSnapshot,
    LearningMetrics,
    PatternAssessment,
    PatternSolution,
    PatternStats,
)

# Order matches the weights in LearningConfig.metric_weights
METRIC_NAMES: tuple[str, ...] = (
    "pattern_recognition",
    "causal_analysis",
    "solution_optimization",
    "cross_issue_learning",
    "prediction_accuracy",
    "data_quality",
)


@runtime_checkable
class PatternScorer(Protocol):
    def score_pattern(self, pattern: PatternStats) -> PatternAssessment: ...

    def score_success_rate(self, success_rate: float, attempts: int) -> PatternAssessment: ...


@runtime_checkable
class MaskingDetector(Protocol):
    def detect_masking(
        self,
        history: Sequence[ConfidenceSnapshot],
        metrics: LearningMetrics | None = None,
        solution_count: int = 0,
    ) -> list[str]: ...


def overall_confidence(metrics: LearningMetrics, weights: dict[str, float]) -> float:
    """Weighted sum of the six sub-metrics, clamped to [0, 100]."""
    total = sum(getattr(metrics, name) * weights.get(name, 0.0) for name in METRIC_NAMES)
    return round(clamp(total), 2)


class HeuristicPatternScorer:
    """Hand-tuned pattern and solution quality rules."""

    def __init__(self, thresholds: MaskingThresholds | None = None) -> None:
        self._t = thresholds or MaskingThresholds()

    def score_pattern(self, pattern: PatternStats) -> PatternAssessment:
        t = self._t
        rate = pattern.success_rate
        freq = pattern.frequency

        if freq < t.low_sample_frequency and rate > t.low_sample_rate:
            return PatternAssessment(
                quality=t.low_sample_score,
                flag=(
                    f"High success rate ({rate * 100:.1f}%) with low sample size ({freq})"
                ),
            )

        if rate == 1.0 and freq < t.perfect_rate_frequency:
            return PatternAssessment(
                quality=t.perfect_rate_score,
                flag=f"Perfect success rate (100%) with insufficient samples ({freq})",
            )

        if len(pattern.solutions) >= 2:
            recent = pattern.solutions[-t.recent_window:]
            recent_rate = sum(1 for s in recent if s.result == "success") / len(recent)
            if abs(recent_rate - rate) > t.recent_divergence:
                return PatternAssessment(
                    quality=t.recent_divergence_score,
                    flag=(
                        f"Sudden success rate change detected "
                        f"({rate * 100:.1f}% -> {recent_rate * 100:.1f}%)"
                    ),
                )

        frequency_quality = min(freq / t.frequency_saturation, 1.0)
        quality = (
            frequency_quality * t.frequency_weight
            + rate * t.success_weight
            + self.variance_quality(pattern.solutions) * t.variance_weight
        )
        return PatternAssessment(quality=quality)

    def variance_quality(self, solutions: Sequence[PatternSolution]) -> float:
        """Consistent outcomes score well; a perfect streak on few samples does not."""
        t = self._t
        if len(solutions) < t.variance_min_samples:
            return t.variance_default_score

        results = [1.0 if s.result == "success" else 0.0 for s in solutions]
        mean = sum(results) / len(results)
        variance = sum((r - mean) ** 2 for r in results) / len(results)

        if variance == 0 and len(results) < t.zero_variance_samples:
            return t.zero_variance_score
        return 1.0 - min(variance, t.max_variance_penalty)

    def score_success_rate(self, success_rate: float, attempts: int) -> PatternAssessment:
        t = self._t
        if success_rate == 1.0 and attempts < t.solution_perfect_attempts:
            return PatternAssessment(
                quality=t.solution_perfect_score,
                flag=f"Perfect success rate (100%) with low attempts ({attempts})",
            )
        if success_rate > t.solution_high_rate and attempts < t.solution_high_rate_attempts:
            return PatternAssessment(
                quality=t.solution_high_rate_score,
                flag=(
                    f"Unrealistically high success rate ({success_rate * 100:.1f}%) "
                    f"with insufficient data"
                ),
            )
        if attempts < t.solution_low_sample_attempts:
            return PatternAssessment(quality=min(success_rate, t.solution_low_sample_cap))
        return PatternAssessment(quality=success_rate)


class HistoryMaskingDetector:
    """Flags confidence that rises faster than its evidence."""

    def __init__(self, thresholds: MaskingThresholds | None = None) -> None:
        self._t = thresholds or MaskingThresholds()

    def detect_masking(
        self,
        history: Sequence[ConfidenceSnapshot],
        metrics: LearningMetrics | None = None,
        solution_count: int = 0,
    ) -> list[str]:
        t = self._t
        flags: list[str] = []

        if len(history) >= t.confidence_lookback:
            recent = history[-t.confidence_window:]
            avg_recent = sum(s.confidence for s in recent) / len(recent)
            previous = history[-t.confidence_lookback]
            if avg_recent - previous.confidence > t.confidence_jump:
                flags.append("Sudden confidence jump detected - possible masking")

        if (
            metrics is not None
            and metrics.solution_optimization > t.optimization_ceiling
            and solution_count < t.optimization_min_solutions
        ):
            flags.append("Unrealistically high solution optimization with low data")

        return flags
