"""
Pitboss — Pattern Generalizer

Strips the specifics (exact chip counts, file paths, error text) out of a
fix attempt so that patterns match similar situations instead of only
identical ones.
"""

from __future__ import annotations

import math
import re
from typing import Any

# Issue types whose outcome depends on the shape of the game state
STATE_RELEVANT_ISSUES: tuple[str, ...] = (
    "chip_mismatch",
    "chip_integrity",
    "player_state",
    "game_state",
    "table_state",
    "balance_error",
    "pot",
)

_FILE_TYPES: dict[str, str] = {
    "py": "python_file",
    "js": "javascript_file",
    "ts": "typescript_file",
    "json": "json_file",
    "cs": "csharp_file",
    "ps1": "powershell_script",
    "md": "markdown_file",
}

_LOG_KEYWORDS = re.compile(r"\b(error|fail|exception|timeout|null|undefined)\b", re.IGNORECASE)
_ERROR_TYPE = re.compile(r"(\w+error|\w+exception)", re.IGNORECASE)
_MAX_LOG_LINES = 5


def _text(value: Any) -> str | None:
    """Text of a caller-supplied detail; dicts contribute their "message"."""
    if isinstance(value, dict):
        value = value.get("message")
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text or None


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def categorize_number(
    value: Any,
    low: float = 10,
    medium: float = 100,
    high: float = 1000,
) -> str:
    if value is None or isinstance(value, bool):
        return "unknown"
    try:
        value = float(value)
    except (TypeError, ValueError):
        return "unknown"
    if math.isnan(value):
        return "unknown"
    if value == 0:
        return "zero"
    if value < low:
        return "low"
    if value < medium:
        return "medium"
    if value < high:
        return "high"
    return "very_high"


def generalize_file_path(path: Any) -> str | None:
    path = _text(path)
    if not path:
        return None
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return _FILE_TYPES.get(ext, "unknown_file")


def generalize_error_message(message: Any) -> str | None:
    message = _text(message)
    if not message:
        return None
    msg = message.lower()
    if "syntax error" in msg or "syntaxerror" in msg:
        return "syntax_error"
    if "typeerror" in msg or "type error" in msg:
        return "type_error"
    if "keyerror" in msg or "referenceerror" in msg:
        return "reference_error"
    if "undefined" in msg or "null" in msg or "none" in msg:
        return "null_undefined_error"
    if "timeout" in msg or "timed out" in msg:
        return "timeout_error"
    if "permission" in msg or "access denied" in msg:
        return "permission_error"
    match = _ERROR_TYPE.search(msg)
    if match:
        return match.group(1).lower().replace("error", "_error").replace("exception", "_exception")
    return "unknown_error"


def generalize_fix_description(description: Any) -> str | None:
    description = _text(description)
    if not description:
        return None
    desc = description.lower()
    if "reset" in desc:
        return "fix_reset_state"
    if "recalculate" in desc or "recompute" in desc:
        return "fix_recalculate"
    if "lock" in desc or "race" in desc:
        return "fix_concurrency"
    if "async" in desc or "await" in desc:
        return "fix_async_error"
    if "type" in desc or "undefined" in desc or "null" in desc:
        return "fix_type_error"
    if "import" in desc:
        return "fix_import_error"
    return "fix_unknown"


def generalize_state_pattern(state: Any, issue_type: str | None) -> str | None:
    """
    Bucketed features of the game state, for issue types where state matters.

    Returns None for irrelevant issue types or when no feature is present.
    """
    if not isinstance(state, dict) or not issue_type:
        return None
    lowered = issue_type.lower()
    if not any(relevant in lowered for relevant in STATE_RELEVANT_ISSUES):
        return None

    features: list[str] = []
    chips = state.get("chips")
    if isinstance(chips, dict):
        features.append(f"chips:{categorize_number(chips.get('total', 0))}")
    players = state.get("players")
    if isinstance(players, (dict, list)):
        features.append(f"players:{categorize_number(len(players), low=2, medium=5, high=10)}")
    phase = state.get("phase")
    if phase:
        features.append(f"phase:{phase}")

    return "|".join(features) if features else None


def extract_log_pattern(logs: list[Any]) -> str:
    """Distinct failure keywords from the first few log lines, in order seen."""
    keywords: list[str] = []
    for entry in logs[:_MAX_LOG_LINES]:
        message = _text(entry) or ""
        for match in _LOG_KEYWORDS.findall(message):
            keyword = match.lower()
            if keyword not in keywords:
                keywords.append(keyword)
    return "|".join(keywords)


def create_minimal_context(
    details: dict[str, Any],
    issue_type: str,
    fix_method: str,
    result: str,
) -> dict[str, Any]:
    """Generalised context for a pattern: categories only, no exact values."""
    context: dict[str, Any] = {
        "issueType": issue_type,
        "fixMethod": fix_method,
        "result": result,
        "fileType": generalize_file_path(details.get("file")),
        "errorCategory": generalize_error_message(_first(details.get("errors"))),
        "fixCategory": generalize_fix_description(_first(details.get("fixes"))),
        "severity": details.get("severity", "unknown"),
    }
    return {k: v for k, v in context.items() if v is not None}


def pattern_similarity(first: str, second: str) -> float:
    """0–1 similarity between two "{category}:{value}" keys."""
    if not first or not second:
        return 0.0
    if first == second:
        return 1.0
    cat1, _, value1 = first.partition(":")
    cat2, _, value2 = second.partition(":")
    if cat1 == cat2:
        if value1 == value2:
            return 1.0
        if value1 in value2 or value2 in value1:
            return 0.7
        return 0.3
    if {cat1, cat2} == {"issueType", "fixMethod"}:
        return 0.5
    return 0.0
