"""
Pitboss — Test & Fix Masking Heuristics

Lexical checks, not static analysis. They look for the usual ways a fix
"passes" without fixing anything: a test that stops asserting, stops
running the code under test, or a change reason that admits to skipping
the hard part.
"""

from __future__ import annotations

from typing import Any

from pitboss.systems.learning.types import FixQualityReport, MaskingVerdict

FUNCTIONALITY_INDICATORS: tuple[str, ...] = (
    "result", "verify", "assert", "expect", "should", "pass", "fail", "equal", "match",
)
EXECUTION_INDICATORS: tuple[str, ...] = (
    "await", "()", "call", "execute", "run", "timeoperation", "processline", "recorderror",
)
ASSERTION_INDICATORS: tuple[str, ...] = (
    "assert", "expect", "should", "equal", "match", "be", "have",
)
MASKING_REASON_KEYWORDS: tuple[str, ...] = (
    "simplify", "easier", "avoid", "skip", "bypass", "workaround", "hanging",
)
WORKAROUND_KEYWORDS: tuple[str, ...] = (
    "workaround", "bypass", "skip", "avoid", "ignore", "simplify", "easier",
)

# Score deductions applied by verify_fix_quality
_NO_OVERLAP_PENALTY = 30
_WORKAROUND_PENALTY = 50
_TEST_MASKING_PENALTY = 40
_UNVERIFIED_PENALTY = 10
# Words shorter than this are ignored when matching a fix to its problem
_MIN_WORD_LENGTH = 5


def _contains_any(code: str | None, indicators: tuple[str, ...]) -> bool:
    if not code:
        return False
    lowered = code.lower()
    return any(indicator in lowered for indicator in indicators)


def detect_test_masking(
    old_test: str | None,
    new_test: str | None,
    context: dict[str, Any] | None = None,
) -> MaskingVerdict:
    """Compare two versions of a test and the stated reason for the change."""
    indicators: list[str] = []

    if old_test and new_test:
        if _contains_any(old_test, FUNCTIONALITY_INDICATORS) and not _contains_any(
            new_test, FUNCTIONALITY_INDICATORS
        ):
            indicators.append("Functionality check removed from test")
        if _contains_any(old_test, EXECUTION_INDICATORS) and not _contains_any(
            new_test, EXECUTION_INDICATORS
        ):
            indicators.append("Test execution removed - test no longer runs functionality")
        if _contains_any(old_test, ASSERTION_INDICATORS) and not _contains_any(
            new_test, ASSERTION_INDICATORS
        ):
            indicators.append("Assertions removed from test")

    reason = (context or {}).get("reason")
    if reason and _contains_any(str(reason), MASKING_REASON_KEYWORDS):
        indicators.append(f'Masking keyword in reason: "{reason}"')

    if indicators:
        return MaskingVerdict(is_masking=True, indicators=indicators, severity="critical")
    return MaskingVerdict(is_masking=False)


def verify_fix_quality(
    fix: dict[str, Any],
    original_problem: dict[str, Any] | None = None,
) -> FixQualityReport:
    """
    Score a fix description out of 100.

    Deductions: the fix never mentions the problem, it reads like a
    workaround, it weakened a test, or nobody verified it.
    """
    report = FixQualityReport(score=100)
    fix_desc = str(fix.get("description", "")).lower()

    if original_problem:
        problem_desc = str(original_problem.get("description", "")).lower()
        problem_words = {w for w in problem_desc.split() if len(w) >= _MIN_WORD_LENGTH}
        fix_words = {w for w in fix_desc.split() if len(w) >= _MIN_WORD_LENGTH}
        if not problem_words & fix_words:
            report.issues.append("Fix does not mention original problem")
            report.score -= _NO_OVERLAP_PENALTY
        if any(k in fix_desc for k in WORKAROUND_KEYWORDS):
            report.issues.append("Fix appears to be a workaround")
            report.score -= _WORKAROUND_PENALTY

    if fix.get("testChange"):
        verdict = detect_test_masking(fix.get("oldTest"), fix.get("testChange"), fix)
        if verdict.is_masking:
            report.issues.append(f"Test masking detected: {'; '.join(verdict.indicators)}")
            report.score -= _TEST_MASKING_PENALTY

    verification = fix.get("verification")
    if not isinstance(verification, dict) or not verification.get("verified"):
        report.warnings.append("Fix not verified - may not actually work")
        report.score -= _UNVERIFIED_PENALTY

    report.score = max(0, report.score)
    return report
