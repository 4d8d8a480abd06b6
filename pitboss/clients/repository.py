"""
Pitboss — State Repositories

Backing stores for the knowledge the monitoring loop accumulates. Every
stateful component owns a handful of logical keys (fixes.*, learning.*)
and talks to a repository through load/save only.

Two backends:
  InMemoryRepository  — tests and throwaway runs
  JsonFileRepository  — one orjson document on local disk

The on-disk document is versioned. Older documents are migrated on load;
documents from a newer schema are refused. Every failure is raised as a
PersistenceError: a monitor that silently loses its own memory would
report confidence it has not earned.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import orjson
import structlog

from pitboss.errors import PersistenceError, SchemaVersionError

logger = structlog.get_logger()

SCHEMA_VERSION = 1

# Keys whose values are maps. Version 0 documents stored these as lists of
# [key, value] pairs.
_MAP_KEYS: frozenset[str] = frozenset({
    "fixes.knowledge",
    "learning.patterns",
    "learning.causalChains",
    "learning.solutionOptimization",
    "learning.crossIssueLearning",
})


@runtime_checkable
class StateRepository(Protocol):
    """Load/save contract every backing store honours."""

    def initialize(self) -> None: ...

    def load(self, key: str) -> Any | None: ...

    def save(self, key: str, value: Any) -> None: ...

    def close(self) -> None: ...


# ─── Schema Migration ─────────────────────────────────────────────


def _pairs_to_object(value: Any) -> Any:
    if isinstance(value, list) and all(
        isinstance(item, list) and len(item) == 2 and isinstance(item[0], str)
        for item in value
    ):
        return {k: v for k, v in value}
    return value


def _migrate_v0_to_v1(document: dict[str, Any]) -> dict[str, Any]:
    keys = {
        key: _pairs_to_object(value) if key in _MAP_KEYS else value
        for key, value in document.items()
    }
    return {"schema_version": 1, "keys": keys}


def migrate_document(document: Any, location: str = "") -> dict[str, Any]:
    """Bring a decoded document up to SCHEMA_VERSION."""
    if not isinstance(document, dict):
        raise PersistenceError(
            f"persisted document must be an object, got {type(document).__name__}",
            location=location,
        )

    version = document.get("schema_version", 0)
    if not isinstance(version, int):
        raise PersistenceError(f"invalid schema_version {version!r}", location=location)
    if version > SCHEMA_VERSION:
        raise SchemaVersionError(
            f"schema_version {version} is newer than supported {SCHEMA_VERSION}",
            location=location,
        )

    if version == 0:
        document = _migrate_v0_to_v1(document)
        logger.info("repository_schema_migrated", location=location, from_version=0, to_version=1)

    if not isinstance(document.get("keys"), dict):
        raise PersistenceError("persisted document has no 'keys' object", location=location)
    return document


def _encode(key: str, value: Any, location: str = "") -> bytes:
    try:
        return orjson.dumps(value)
    except TypeError as exc:
        raise PersistenceError(
            f"value for {key!r} is not serialisable: {exc}", key=key, location=location,
        ) from exc


# ─── Backends ─────────────────────────────────────────────────────


class InMemoryRepository:
    """
    Process-local repository.

    Values are stored encoded so callers can never mutate persisted state
    through a reference they still hold, and so unserialisable values fail
    here exactly as they would on disk.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, bytes] = {}
        for key, value in (initial or {}).items():
            self._data[key] = _encode(key, value, "memory")
        self.save_count: int = 0

    def initialize(self) -> None:
        return None

    def load(self, key: str) -> Any | None:
        raw = self._data.get(key)
        if raw is None:
            return None
        return orjson.loads(raw)

    def save(self, key: str, value: Any) -> None:
        self._data[key] = _encode(key, value, "memory")
        self.save_count += 1

    def close(self) -> None:
        return None

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileRepository:
    """
    Single-file repository.

    The whole document is held in memory and rewritten atomically on every
    save (temp file then rename), so a crash mid-write leaves the previous
    document intact.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._document: dict[str, Any] | None = None
        self._logger = logger.bind(component="json_repository", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    def initialize(self) -> None:
        """Read and migrate the document. A missing file starts empty."""
        location = str(self._path)
        if not self._path.exists():
            self._document = {"schema_version": SCHEMA_VERSION, "keys": {}}
            self._logger.info("repository_created_empty")
            return

        try:
            raw = self._path.read_bytes()
        except OSError as exc:
            self._logger.error("repository_read_failed", error=str(exc))
            raise PersistenceError(f"cannot read {location}: {exc}", location=location) from exc

        try:
            decoded = orjson.loads(raw) if raw.strip() else {}
        except orjson.JSONDecodeError as exc:
            self._logger.error("repository_decode_failed", error=str(exc))
            raise PersistenceError(f"corrupt document {location}: {exc}", location=location) from exc

        self._document = migrate_document(decoded, location)
        self._logger.info("repository_loaded", keys=len(self._document["keys"]))

    def _ensure_loaded(self) -> dict[str, Any]:
        if self._document is None:
            self.initialize()
        assert self._document is not None
        return self._document

    def load(self, key: str) -> Any | None:
        return self._ensure_loaded()["keys"].get(key)

    def save(self, key: str, value: Any) -> None:
        document = self._ensure_loaded()
        location = str(self._path)
        # Round-trip so the held document never aliases caller state; the
        # held document only changes once the file is replaced
        stored = orjson.loads(_encode(key, value, location))
        updated = {**document, "keys": {**document["keys"], key: stored}}
        payload = orjson.dumps(updated, option=orjson.OPT_INDENT_2)

        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(payload)
            os.replace(tmp_path, self._path)
        except OSError as exc:
            self._logger.error("repository_write_failed", key=key, error=str(exc))
            raise PersistenceError(
                f"cannot write {location}: {exc}", key=key, location=location,
            ) from exc
        self._document = updated

    def close(self) -> None:
        self._document = None


def create_repository(backend: str, path: str | Path = "") -> StateRepository:
    """Build the configured backend."""
    if backend == "memory":
        return InMemoryRepository()
    if backend == "json":
        return JsonFileRepository(path)
    raise ValueError(f"unknown persistence backend {backend!r}")
