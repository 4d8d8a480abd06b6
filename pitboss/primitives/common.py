"""
Pitboss — Common Primitives

Shared base classes and utilities used across all systems.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from pydantic import BaseModel
from ulid import ULID

# Injectable time source: returns epoch milliseconds
Clock = Callable[[], int]


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


# ─── Base Models ──────────────────────────────────────────────────


class PitbossBaseModel(BaseModel):
    """Base model for all Pitboss records."""

    model_config = {"populate_by_name": True, "from_attributes": True}
