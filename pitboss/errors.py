"""
Pitboss — Error Hierarchy

Only persistence faults are exceptions. A monitoring layer that hides its
own storage failures cannot be trusted to report anyone else's, so these
always propagate to whoever orchestrates startup.

Missing collaborators (unknown issue, no dependency graph) are not errors:
callers get None or an empty result. Masking is not an error either; it is
surfaced as a warning, a log line and an event.
"""

from __future__ import annotations


class PitbossError(RuntimeError):
    """Base for all Pitboss errors."""


class PersistenceError(PitbossError):
    """
    A backing-store read, write or decode failed.

    Carries the logical key (when one was involved) and the storage location.
    """

    def __init__(self, message: str, *, key: str = "", location: str = "") -> None:
        super().__init__(message)
        self.key = key
        self.location = location


class SchemaVersionError(PersistenceError):
    """The persisted document was written by a newer schema than this code reads."""
