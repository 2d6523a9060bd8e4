from __future__ import annotations

import json
from pathlib import Path

import pytest

from models import RunStats
from storage import (
    CacheEntry,
    JsonCacheRepository,
    JsonProgressRepository,
    MemoryCacheRepository,
    MemoryProgressRepository,
    StorageError,
    write_json_atomic,
)

DOI = "10.1038/s41586-020-1234-5"
MESSAGE = {"DOI": DOI, "title": ["Auditory cortex maps"]}


def test_memory_cache_is_append_only() -> None:
    cache = MemoryCacheRepository()

    assert cache.put(CacheEntry(DOI, record=MESSAGE)) is True
    assert cache.put(CacheEntry(DOI.upper(), error="HTTP 500")) is False

    entry = cache.get(DOI)
    assert entry is not None
    assert entry.record == MESSAGE
    assert len(cache) == 1


def test_cache_entry_json_round_trip() -> None:
    ok = CacheEntry(DOI, record=MESSAGE)
    failed = CacheEntry(DOI, error="HTTP 404")

    assert ok.to_json() == {"record": MESSAGE}
    assert failed.to_json() == {"error": "HTTP 404"}
    assert CacheEntry.from_json(DOI, ok.to_json()) == ok
    assert CacheEntry.from_json(DOI, failed.to_json()).failed is True
    assert CacheEntry.from_json(DOI, "garbage").error == "unknown error"


def test_json_cache_persists_on_flush(tmp_path: Path) -> None:
    path = tmp_path / "cache.json"
    cache = JsonCacheRepository(path)
    cache.put(CacheEntry(DOI, record=MESSAGE))
    cache.put(CacheEntry("10.1000/missing", error="HTTP 404"))

    assert not path.exists()
    cache.flush()

    reloaded = JsonCacheRepository(path)
    assert len(reloaded) == 2
    assert reloaded.get(DOI).record == MESSAGE
    assert reloaded.get("10.1000/MISSING").failed is True


def test_json_cache_never_overwrites_loaded_entries(tmp_path: Path) -> None:
    path = tmp_path / "cache.json"
    path.write_text(json.dumps({DOI: {"record": MESSAGE}}), encoding="utf-8")

    cache = JsonCacheRepository(path)
    assert cache.put(CacheEntry(DOI, error="HTTP 500")) is False
    cache.flush()

    assert json.loads(path.read_text(encoding="utf-8")) == {DOI: {"record": MESSAGE}}


def test_json_cache_clear_writes_empty_file(tmp_path: Path) -> None:
    path = tmp_path / "cache.json"
    cache = JsonCacheRepository(path)
    cache.put(CacheEntry(DOI, record=MESSAGE))
    cache.flush()

    cache.clear()

    assert len(cache) == 0
    assert json.loads(path.read_text(encoding="utf-8")) == {}


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
def test_corrupt_cache_is_fatal(tmp_path: Path, content: str) -> None:
    path = tmp_path / "cache.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(StorageError):
        JsonCacheRepository(path)


def test_memory_progress_is_monotonic() -> None:
    progress = MemoryProgressRepository()
    stats = RunStats(total=3, valid=2, invalid=1)

    progress.mark_completed("batch-001", stats)
    progress.mark_completed("batch-001", stats)

    assert progress.completed_batches == ["batch-001"]
    assert progress.is_completed("batch-001") is True
    assert progress.is_completed("batch-002") is False
    assert progress.stats.total == 3


def test_progress_stats_are_copies() -> None:
    progress = MemoryProgressRepository()
    progress.stats.total = 99
    assert progress.stats.total == 0


def test_json_progress_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "progress.json"
    progress = JsonProgressRepository(path)
    progress.mark_completed("batch-001", RunStats(total=2, category_parser=2, valid=2))

    reloaded = JsonProgressRepository(path)
    assert reloaded.completed_batches == ["batch-001"]
    assert reloaded.stats == RunStats(total=2, category_parser=2, valid=2)


def test_json_progress_reset(tmp_path: Path) -> None:
    path = tmp_path / "progress.json"
    progress = JsonProgressRepository(path)
    progress.mark_completed("batch-001", RunStats(total=1))

    progress.reset()

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["completed_batches"] == []
    assert data["stats"]["total"] == 0


def test_corrupt_progress_is_fatal(tmp_path: Path) -> None:
    path = tmp_path / "progress.json"
    path.write_text(json.dumps({"completed_batches": "batch-001"}), encoding="utf-8")

    with pytest.raises(StorageError, match="completed_batches"):
        JsonProgressRepository(path)


def test_write_json_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "state.json"
    write_json_atomic(target, {"a": "日本語"})
    write_json_atomic(target, {"a": 2})

    assert json.loads(target.read_text(encoding="utf-8")) == {"a": 2}
    assert [p.name for p in target.parent.iterdir()] == ["state.json"]
