"""
Pitboss — Event Bus

In-process async publish/subscribe. Components never reach into each
other's maps; they announce what happened here and whoever cares listens.

Delivery is sequential: type subscribers first, in subscription order,
then catch-all subscribers. A handler that publishes from inside its own
callback finishes that nested delivery before the next handler runs.

A subscriber that raises or overruns its timeout is logged and skipped so
one broken listener cannot stall the loop being monitored.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter, defaultdict, deque
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from pitboss.events.types import PitbossEvent, PitbossEventType

logger = structlog.get_logger("pitboss.events.bus")

# Callback signature: async def handler(event: PitbossEvent) -> None
EventCallback = Callable[[PitbossEvent], Coroutine[Any, Any, None]]

_DEFAULT_CALLBACK_TIMEOUT_S: float = 1.0
_DEFAULT_RECENT_BUFFER_SIZE: int = 100


def _callback_name(callback: EventCallback) -> str:
    owner = getattr(callback, "__self__", None)
    name = getattr(callback, "__qualname__", None) or getattr(callback, "__name__", None)
    if name is None:
        return repr(callback)
    if owner is not None and "." not in name:
        return f"{type(owner).__name__}.{name}"
    return name


class EventBus:
    """
    Pitboss inter-component event bus.

    The service owns one instance; the state store, issue registry and
    each monitoring component publish through it.
    """

    def __init__(
        self,
        callback_timeout_s: float = _DEFAULT_CALLBACK_TIMEOUT_S,
        recent_buffer_size: int = _DEFAULT_RECENT_BUFFER_SIZE,
    ) -> None:
        self._callback_timeout_s = callback_timeout_s
        self._recent_buffer_size = recent_buffer_size
        self._logger = logger.bind(system="pitboss", component="event_bus")

        self._subscribers: dict[PitbossEventType, list[EventCallback]] = defaultdict(list)
        self._catch_all: list[EventCallback] = []
        self._recent: dict[PitbossEventType, deque[PitbossEvent]] = {}

        self._emitted_by_source: Counter[str] = Counter()
        self._callback_errors: int = 0
        self._callback_timeouts: int = 0

    # ─── Subscription ────────────────────────────────────────────────

    def subscribe(self, event_type: PitbossEventType, callback: EventCallback) -> None:
        self._subscribers[event_type].append(callback)

    def subscribe_all(self, callback: EventCallback) -> None:
        """Receive every event, after the type-specific subscribers."""
        self._catch_all.append(callback)

    def unsubscribe(self, event_type: PitbossEventType, callback: EventCallback) -> None:
        """Remove a callback. Unknown callbacks are ignored."""
        callbacks = self._subscribers.get(event_type)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    # ─── Emission ────────────────────────────────────────────────────

    async def emit(self, event: PitbossEvent) -> None:
        self._emitted_by_source[event.source_system] += 1
        buffer = self._recent.get(event.event_type)
        if buffer is None:
            buffer = deque(maxlen=self._recent_buffer_size)
            self._recent[event.event_type] = buffer
        buffer.append(event)

        # Snapshot, so handlers may (un)subscribe while being called
        callbacks = [*self._subscribers.get(event.event_type, ()), *self._catch_all]
        for callback in callbacks:
            await self._invoke(callback, event)

    async def publish(
        self,
        event_type: PitbossEventType,
        data: dict[str, Any],
        source_system: str = "pitboss",
        timestamp: int | None = None,
    ) -> PitbossEvent:
        """Build and emit an event in one call. Returns the event delivered."""
        event = PitbossEvent(event_type=event_type, data=data, source_system=source_system)
        if timestamp is not None:
            event.timestamp = timestamp
        await self.emit(event)
        return event

    async def _invoke(self, callback: EventCallback, event: PitbossEvent) -> None:
        try:
            await asyncio.wait_for(callback(event), timeout=self._callback_timeout_s)
        except TimeoutError:
            self._callback_timeouts += 1
            self._logger.warning(
                "event_callback_timeout",
                event_type=event.event_type.value,
                source=event.source_system,
                callback=_callback_name(callback),
                timeout_s=self._callback_timeout_s,
            )
        except Exception as exc:
            self._callback_errors += 1
            self._logger.error(
                "event_callback_error",
                event_type=event.event_type.value,
                source=event.source_system,
                callback=_callback_name(callback),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    # ─── Query ───────────────────────────────────────────────────────

    def recent(self, event_type: PitbossEventType, limit: int = 10) -> list[PitbossEvent]:
        """Newest first."""
        buffer = self._recent.get(event_type)
        if not buffer:
            return []
        return list(itertools.islice(reversed(buffer), limit))

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_emitted": sum(self._emitted_by_source.values()),
            "emitted_by_source": dict(self._emitted_by_source),
            "callback_errors": self._callback_errors,
            "callback_timeouts": self._callback_timeouts,
            "subscriber_count": (
                sum(len(callbacks) for callbacks in self._subscribers.values())
                + len(self._catch_all)
            ),
            "recent_buffer_sizes": {
                event_type.value: len(buffer) for event_type, buffer in self._recent.items()
            },
        }
