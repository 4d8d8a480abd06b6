"""
Pitboss — State Store

Dotted-path view of the monitored application's live state. Every write
is announced as a stateChanged event, which is what the causal analyzer
records and what the decision policy watches.

The monitoring loop itself only needs get/set/subscribe; the in-memory
store here is what the service runs on and what the tests drive.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from pitboss.events.types import PitbossEventType
from pitboss.primitives.common import Clock, now_ms
from pitboss.primitives.issue import StateChange

if TYPE_CHECKING:
    from pitboss.events.bus import EventBus

logger = structlog.get_logger()

# Path subscriber signature: async def handler(change: StateChange) -> None
StateCallback = Callable[[StateChange], Coroutine[Any, Any, None]]

_WILDCARD = "*"


@runtime_checkable
class StateStore(Protocol):
    def get(self, path: str | None = None) -> Any: ...

    async def set(self, path: str, value: Any, trigger: str = "unknown") -> StateChange: ...

    def subscribe(self, path: str, callback: StateCallback) -> Callable[[], None]: ...


def _matches(subscribed: str, path: str) -> bool:
    return (
        subscribed == _WILDCARD
        or path == subscribed
        or path.startswith(subscribed + ".")
    )


class InMemoryStateStore:
    """Nested-dict state with dotted-path access."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        initial: dict[str, Any] | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._bus = event_bus
        self._clock = clock
        self._state: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._subscribers: list[tuple[str, StateCallback]] = []
        self._total_writes: int = 0
        self._logger = logger.bind(system="collaborators", component="state_store")

    def get(self, path: str | None = None) -> Any:
        """Value at a dotted path, or None when any segment is missing."""
        if not path:
            return self._state
        node: Any = self._state
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def snapshot(self, path: str | None = None) -> Any:
        """Deep copy of the value at path, safe to keep."""
        return copy.deepcopy(self.get(path))

    async def set(self, path: str, value: Any, trigger: str = "unknown") -> StateChange:
        """Write a value, creating intermediate maps, and announce the change."""
        parts = path.split(".")
        node = self._state
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child

        old_value = copy.deepcopy(node.get(parts[-1]))
        node[parts[-1]] = value
        self._total_writes += 1

        change = StateChange(
            timestamp=self._clock(),
            path=path,
            old_value=old_value,
            new_value=copy.deepcopy(value),
            trigger=trigger,
        )

        for subscribed, callback in list(self._subscribers):
            if _matches(subscribed, path):
                await callback(change)

        if self._bus is not None:
            await self._bus.publish(
                PitbossEventType.STATE_CHANGED,
                {
                    "path": change.path,
                    "oldValue": change.old_value,
                    "newValue": change.new_value,
                    "trigger": change.trigger,
                    "timestamp": change.timestamp,
                },
                source_system="state_store",
                timestamp=change.timestamp,
            )
        return change

    def subscribe(self, path: str, callback: StateCallback) -> Callable[[], None]:
        """Watch a path (and everything beneath it). Returns an unsubscribe function."""
        entry = (path, callback)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_writes": self._total_writes,
            "subscribers": len(self._subscribers),
        }
