"""
Pitboss — Events

In-process event bus and the typed events that flow over it.
"""

from pitboss.events.bus import EventBus, EventCallback
from pitboss.events.types import PitbossEvent, PitbossEventType

__all__ = [
    "EventBus",
    "EventCallback",
    "PitbossEvent",
    "PitbossEventType",
]
