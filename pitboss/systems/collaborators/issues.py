"""
Pitboss — Issue Registry

Holds detected issues keyed by id. A re-detection of the same issue bumps
its occurrence count rather than creating a duplicate, and every detection
is announced so the causal chain can be recomputed.

An issue is active while it keeps being seen: anything not re-detected
within the active window drops out of get_active_issues().
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import orjson
import structlog
from pydantic import Field

from pitboss.events.types import PitbossEventType
from pitboss.primitives.common import Clock, PitbossBaseModel, now_ms
from pitboss.primitives.issue import (
    CausalLink,
    Issue,
    IssueSeverity,
    RootCause,
    compute_priority,
)

if TYPE_CHECKING:
    from pitboss.events.bus import EventBus

logger = structlog.get_logger()

_ACTIVE_WINDOW_MS: int = 5 * 60 * 1000


class IssueDraft(PitbossBaseModel):
    """What a detector knows about an anomaly before it becomes an Issue."""

    type: str
    severity: IssueSeverity = IssueSeverity.MEDIUM
    details: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None


@runtime_checkable
class IssueRegistry(Protocol):
    def get_issue(self, issue_id: str) -> Issue | None: ...

    def get_active_issues(self) -> list[Issue]: ...

    def all_issues(self) -> list[Issue]: ...

    async def detect_issue(self, draft: IssueDraft) -> Issue: ...

    def annotate(
        self,
        issue_id: str,
        root_cause: RootCause | None,
        causal_chain: list[CausalLink],
    ) -> Issue | None: ...


def issue_fingerprint(issue_type: str, details: dict[str, Any]) -> str:
    """Stable id for an issue: same type and details hash to the same id."""
    payload = orjson.dumps(
        {"type": issue_type, "details": details},
        option=orjson.OPT_SORT_KEYS,
        default=str,
    )
    return f"{issue_type}_{hashlib.sha256(payload).hexdigest()[:12]}"


class InMemoryIssueRegistry:
    def __init__(
        self,
        event_bus: EventBus | None = None,
        clock: Clock = now_ms,
        active_window_ms: int = _ACTIVE_WINDOW_MS,
    ) -> None:
        self._bus = event_bus
        self._clock = clock
        self._active_window_ms = active_window_ms
        self._issues: dict[str, Issue] = {}
        self._total_detections: int = 0
        self._logger = logger.bind(system="collaborators", component="issue_registry")

    async def detect_issue(self, draft: IssueDraft) -> Issue:
        """Register (or re-register) an issue and announce the detection."""
        now = self._clock()
        issue_id = draft.id or issue_fingerprint(draft.type, draft.details)
        self._total_detections += 1

        issue = self._issues.get(issue_id)
        if issue is None:
            issue = Issue(
                id=issue_id,
                type=draft.type,
                severity=draft.severity,
                details=dict(draft.details),
                first_seen=now,
                last_seen=now,
            )
            self._issues[issue_id] = issue
            self._logger.info(
                "issue_detected",
                issue_id=issue_id,
                issue_type=draft.type,
                severity=draft.severity.value,
            )
        else:
            issue.count += 1
            issue.last_seen = now
            issue.details.update(draft.details)

        issue.priority = compute_priority(issue.severity, issue.count)

        if self._bus is not None:
            await self._bus.publish(
                PitbossEventType.ISSUE_DETECTED,
                {"issue": issue.model_dump(mode="json"), "occurrence": issue.count},
                source_system="issue_registry",
                timestamp=now,
            )
        return issue

    def get_issue(self, issue_id: str) -> Issue | None:
        return self._issues.get(issue_id)

    def get_active_issues(self) -> list[Issue]:
        """Issues seen within the active window, highest priority first."""
        cutoff = self._clock() - self._active_window_ms
        active = [i for i in self._issues.values() if i.last_seen >= cutoff]
        active.sort(key=lambda i: i.priority, reverse=True)
        return active

    def all_issues(self) -> list[Issue]:
        """Every issue seen, active or not, in first-seen order."""
        return list(self._issues.values())

    def annotate(
        self,
        issue_id: str,
        root_cause: RootCause | None,
        causal_chain: list[CausalLink],
    ) -> Issue | None:
        """Attach causal findings. Unknown ids are ignored."""
        issue = self._issues.get(issue_id)
        if issue is None:
            return None
        issue.root_cause = root_cause
        issue.causal_chain = list(causal_chain)
        return issue

    def resolve(self, issue_id: str) -> bool:
        """Remove an issue. Returns False if it was not registered."""
        issue = self._issues.pop(issue_id, None)
        if issue is None:
            return False
        self._logger.info("issue_resolved", issue_id=issue_id, occurrences=issue.count)
        return True

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_detections": self._total_detections,
            "registered": len(self._issues),
            "active": len(self.get_active_issues()),
        }
