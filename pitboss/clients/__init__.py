"""
Pitboss — Clients

Backing-store clients for the monitoring loop's persisted knowledge.
"""

from pitboss.clients.repository import (
    SCHEMA_VERSION,
    InMemoryRepository,
    JsonFileRepository,
    StateRepository,
    create_repository,
    migrate_document,
)

__all__ = [
    "SCHEMA_VERSION",
    "InMemoryRepository",
    "JsonFileRepository",
    "StateRepository",
    "create_repository",
    "migrate_document",
]
