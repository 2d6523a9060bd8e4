"""Durable identifier cache and batch progress, behind small repository interfaces.

The orchestrator only sees the CacheRepository / ProgressRepository protocols,
so tests can inject the in-memory versions instead of touching disk.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from models import RunStats

LOGGER = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """A cache or progress file exists but cannot be read or written."""


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Resolved registry record, or a failure sentinel carrying the cause."""

    identifier: str
    record: dict[str, Any] | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.record is None

    def to_json(self) -> dict[str, Any]:
        if self.failed:
            return {"error": self.error or "unknown error"}
        return {"record": self.record}

    @classmethod
    def from_json(cls, identifier: str, data: Any) -> CacheEntry:
        if isinstance(data, dict) and isinstance(data.get("record"), dict):
            return cls(identifier=identifier, record=data["record"])
        error = data.get("error") if isinstance(data, dict) else None
        return cls(identifier=identifier, error=str(error or "unknown error"))


class CacheRepository(Protocol):
    def get(self, identifier: str) -> CacheEntry | None: ...

    def put(self, entry: CacheEntry) -> bool: ...

    def __len__(self) -> int: ...

    def flush(self) -> None: ...

    def clear(self) -> None: ...


class ProgressRepository(Protocol):
    @property
    def stats(self) -> RunStats: ...

    @property
    def completed_batches(self) -> list[str]: ...

    def is_completed(self, batch_id: str) -> bool: ...

    def mark_completed(self, batch_id: str, stats: RunStats) -> None: ...

    def reset(self) -> None: ...


def _cache_key(identifier: str) -> str:
    # DOIs are case-insensitive.
    return identifier.strip().lower()


class MemoryCacheRepository:
    """Append-only identifier cache held in memory."""

    def __init__(self, entries: dict[str, CacheEntry] | None = None) -> None:
        self._entries: dict[str, CacheEntry] = {}
        for entry in (entries or {}).values():
            self.put(entry)

    def get(self, identifier: str) -> CacheEntry | None:
        return self._entries.get(_cache_key(identifier))

    def put(self, entry: CacheEntry) -> bool:
        """Store entry unless the identifier is already cached. Returns True if stored."""
        key = _cache_key(entry.identifier)
        if key in self._entries:
            LOGGER.debug("Cache already holds %s, keeping the first result", key)
            return False
        self._entries[key] = entry
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def flush(self) -> None:
        return None

    def clear(self) -> None:
        self._entries.clear()


class JsonCacheRepository(MemoryCacheRepository):
    """Identifier cache persisted as one JSON object, rewritten atomically on flush."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._dirty = False
        for identifier, data in _read_json(self.path, default={}).items():
            super().put(CacheEntry.from_json(identifier, data))
        LOGGER.info("Loaded %s cached identifiers from %s", len(self), self.path)

    def put(self, entry: CacheEntry) -> bool:
        stored = super().put(entry)
        self._dirty = self._dirty or stored
        return stored

    def flush(self) -> None:
        if not self._dirty and self.path.exists():
            return
        payload = {key: entry.to_json() for key, entry in self._entries.items()}
        write_json_atomic(self.path, payload)
        self._dirty = False

    def clear(self) -> None:
        super().clear()
        self._dirty = True
        self.flush()


class MemoryProgressRepository:
    """Completed batch ids plus aggregate counters, held in memory."""

    def __init__(self, completed: list[str] | None = None, stats: RunStats | None = None) -> None:
        self._completed: list[str] = list(completed or [])
        self._stats = stats or RunStats()

    @property
    def stats(self) -> RunStats:
        return RunStats.from_dict(self._stats.as_dict())

    @property
    def completed_batches(self) -> list[str]:
        return list(self._completed)

    def is_completed(self, batch_id: str) -> bool:
        return batch_id in self._completed

    def mark_completed(self, batch_id: str, stats: RunStats) -> None:
        if batch_id not in self._completed:
            self._completed.append(batch_id)
        self._stats = RunStats.from_dict(stats.as_dict())
        self._save()

    def reset(self) -> None:
        self._completed = []
        self._stats = RunStats()
        self._save()

    def _save(self) -> None:
        return None


class JsonProgressRepository(MemoryProgressRepository):
    """Progress state persisted as JSON after every completed batch."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        data = _read_json(self.path, default={})
        completed = data.get("completed_batches") or []
        if not isinstance(completed, list):
            raise StorageError(f"Corrupt progress file {self.path}: completed_batches is not a list")
        super().__init__(completed=[str(b) for b in completed], stats=RunStats.from_dict(data.get("stats")))
        LOGGER.info("Loaded progress from %s: %s completed batches", self.path, len(self._completed))

    def _save(self) -> None:
        write_json_atomic(
            self.path,
            {"completed_batches": self._completed, "stats": self._stats.as_dict()},
        )


def _read_json(path: Path, default: dict[str, Any]) -> dict[str, Any]:
    if not path.exists():
        return dict(default)
    try:
        with path.open(encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise StorageError(f"Cannot read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise StorageError(f"Corrupt state file {path}: expected a JSON object")
    return data


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON to a temp file in the same directory, then replace the target."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".tmp_{path.stem}_", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            json.dump(payload, tmp, ensure_ascii=False, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        raise StorageError(f"Cannot write {path}: {exc}") from exc
