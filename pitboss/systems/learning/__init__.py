"""
Pitboss — Learning

Pattern learning over fix attempts, and a confidence score that resists
being gamed.
"""

from pitboss.systems.learning.engine import LearningEngine
from pitboss.systems.learning.masking import detect_test_masking, verify_fix_quality
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
    ConfidenceReport,
    ConfidenceSnapshot,
    ConfidenceTrend,
    FixQualityReport,
    LearningMetrics,
    LearningReport,
    MaskingVerdict,
    MaskingWarning,
    Mistake,
    MistakeType,
    PatternAssessment,
    PatternCategory,
    PatternStats,
    Prediction,
)

__all__ = [
    "METRIC_NAMES",
    "AutoAdjustment",
    "ConfidenceReport",
    "ConfidenceSnapshot",
    "ConfidenceTrend",
    "FixQualityReport",
    "HeuristicPatternScorer",
    "HistoryMaskingDetector",
    "LearningEngine",
    "LearningMetrics",
    "LearningReport",
    "MaskingDetector",
    "MaskingVerdict",
    "MaskingWarning",
    "Mistake",
    "MistakeType",
    "PatternAssessment",
    "PatternCategory",
    "PatternScorer",
    "PatternStats",
    "Prediction",
    "detect_test_masking",
    "overall_confidence",
    "verify_fix_quality",
]
