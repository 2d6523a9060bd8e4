from __future__ import annotations

import json
from functools import partial
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from batch_io import BatchInputError
from crossref_client import CrossrefResolver, LookupResult
from fallback_resolver import regex_fallback, resolve_by_inference
from llm_client import InferenceResult
from models import Category, Citation, ParsedRecord, Provenance
from pipeline import CitationPipeline
from storage import JsonCacheRepository, JsonProgressRepository, MemoryCacheRepository, MemoryProgressRepository

DOI = "10.1038/s41586-020-1234-5"

PARSEABLE = '(1) Jane Doe, John Smith: "A Study of X." Journal of Y 12(3): pp.45-60, 2019'
UNPARSEABLE_WITH_DOI = f"(2) Doe J. Auditory cortex maps. Nature 580, 2020. doi:{DOI}"
GARBAGE = "garbled text without structure"

CROSSREF_MESSAGE: dict[str, Any] = {
    "DOI": DOI,
    "type": "journal-article",
    "title": ["Auditory cortex maps"],
    "author": [{"given": "Jane", "family": "Doe"}],
    "container-title": ["Nature"],
    "published-print": {"date-parts": [[2020]]},
}


def _unreachable_model(prompt: str) -> InferenceResult:
    return InferenceResult(ok=False, error="connection refused")


def _write_batch(directory: Path, name: str, items: list[Any], category: str = "journal-en") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.json"
    path.write_text(json.dumps({"category": category, "items": items}), encoding="utf-8")
    return path


def _pipeline(
    tmp_path: Path,
    fetch: Any = None,
    cache: Any = None,
    progress: Any = None,
    **kwargs: Any,
) -> CitationPipeline:
    cache = cache if cache is not None else MemoryCacheRepository()
    fetch = fetch or MagicMock(return_value=LookupResult(ok=True, message=CROSSREF_MESSAGE))
    kwargs.setdefault("fallback", partial(resolve_by_inference, generate=_unreachable_model))
    return CitationPipeline(
        cache=cache,
        progress=progress if progress is not None else MemoryProgressRepository(),
        output_dir=tmp_path / "parsed",
        resolver=CrossrefResolver(cache, fetch=fetch, min_interval=0),
        **kwargs,
    )


def test_every_citation_yields_exactly_one_record(tmp_path: Path) -> None:
    path = _write_batch(tmp_path / "batches", "batch-001", [PARSEABLE, UNPARSEABLE_WITH_DOI, GARBAGE])

    summary = _pipeline(tmp_path).run([path])

    records = summary.processed[0].records
    assert len(records) == 3
    assert [r.raw_text for r in records] == [PARSEABLE, UNPARSEABLE_WITH_DOI, GARBAGE]
    assert [r.provenance for r in records] == [
        Provenance.CATEGORY_PARSER,
        Provenance.EXTERNAL_RESOLVER,
        Provenance.FALLBACK_RESOLVER,
    ]
    assert summary.stats.total == 3
    assert summary.stats.valid == 2
    assert summary.stats.invalid == 1


def test_resolvable_doi_beats_fallback(tmp_path: Path) -> None:
    fallback = MagicMock()
    pipeline = _pipeline(tmp_path, fallback=fallback)
    citation = Citation(UNPARSEABLE_WITH_DOI, Category.JOURNAL_EN, 0)

    record = pipeline.process_citation(citation, 0)

    assert record.provenance is Provenance.EXTERNAL_RESOLVER
    assert record.valid is True
    assert record.title == "Auditory cortex maps"
    fallback.assert_not_called()


def test_invalid_parser_output_falls_through(tmp_path: Path) -> None:
    raw = '(1) Jane Doe: "Future Work." Journal of Y 1(1): pp.1-2, 2099'
    fallback = MagicMock(side_effect=regex_fallback)
    pipeline = _pipeline(tmp_path, fallback=fallback)

    record = pipeline.process_citation(Citation(raw, Category.JOURNAL_EN, 0), 0)

    fallback.assert_called_once()
    assert record.provenance is Provenance.FALLBACK_RESOLVER
    assert record.valid is False
    assert "invalid year: 2099" in record.errors


def test_unresolvable_doi_falls_back_and_keeps_the_doi(tmp_path: Path) -> None:
    fetch = MagicMock(return_value=LookupResult(ok=False, error="HTTP 404"))
    pipeline = _pipeline(tmp_path, fetch=fetch, fallback=regex_fallback)

    record = pipeline.process_citation(Citation(UNPARSEABLE_WITH_DOI, Category.JOURNAL_EN, 0), 0)

    assert record.provenance is Provenance.FALLBACK_RESOLVER
    assert record.doi == DOI


def test_model_doi_url_is_normalized_to_a_valid_record(tmp_path: Path) -> None:
    raw = '(3) Jane Doe: "Spiking codes." Neural Computation 33(2): pp.1-20, 2021, doi: 10.1162/neco_a_01234'
    answer = json.dumps({
        "authors": ["Jane Doe"],
        "title": "Spiking codes",
        "year": 2021,
        "type": "journal",
        "doi": "https://doi.org/10.1162/neco_a_01234",
    })
    fetch = MagicMock(return_value=LookupResult(ok=False, error="HTTP 404"))
    pipeline = _pipeline(
        tmp_path,
        fetch=fetch,
        parse=MagicMock(return_value=None),
        fallback=partial(resolve_by_inference, generate=lambda prompt: InferenceResult(ok=True, text=answer)),
    )

    record = pipeline.process_citation(Citation(raw, Category.JOURNAL_EN, 0), 0)

    fetch.assert_called_once()
    assert record.provenance is Provenance.FALLBACK_RESOLVER
    assert record.doi == "10.1162/neco_a_01234"
    assert record.valid is True
    assert record.errors == ()


def test_unreachable_model_yields_invalid_stub(tmp_path: Path) -> None:
    pipeline = _pipeline(tmp_path)

    record = pipeline.process_citation(Citation(GARBAGE, Category.OTHER, 0), 0)

    assert record.provenance is Provenance.FALLBACK_RESOLVER
    assert record.valid is False
    assert "missing title" in record.errors


def test_raising_strategies_never_escape(tmp_path: Path) -> None:
    parse = MagicMock(side_effect=ValueError("regex blew up"))
    fallback = MagicMock(side_effect=RuntimeError("model client bug"))
    pipeline = _pipeline(tmp_path, parse=parse, fallback=fallback)

    record = pipeline.process_citation(Citation(PARSEABLE, Category.JOURNAL_EN, 0), 5)

    assert record.provenance is Provenance.FALLBACK_RESOLVER
    assert record.valid is False
    assert record.record_id == "unknown-unknown-untitled-5"
    assert pipeline.stats.total == 1


def test_finalize_attaches_derived_fields(tmp_path: Path) -> None:
    raw = PARSEABLE + ", arXiv:2101.01234 【Best Paper Award】"
    record = _pipeline(tmp_path).process_citation(Citation(raw, Category.JOURNAL_EN, 0), 7)

    assert record.provenance is Provenance.CATEGORY_PARSER
    assert record.language == "en"
    assert record.arxiv == "2101.01234"
    assert record.awards == ("Best Paper Award",)
    assert record.category is Category.JOURNAL_EN
    assert record.record_id == "2019-janedoe-a-study-of-x-7"
    assert record.valid is True
    assert record.errors == ()


def test_record_ids_use_a_running_index_across_batches(tmp_path: Path) -> None:
    batches = tmp_path / "batches"
    first = _write_batch(batches, "batch-001", [PARSEABLE, PARSEABLE])
    second = _write_batch(batches, "batch-002", [PARSEABLE])

    summary = _pipeline(tmp_path).run([first, second])

    ids = [r.record_id for result in summary.processed for r in result.records]
    assert [i.rsplit("-", 1)[1] for i in ids] == ["0", "1", "2"]


def test_rerun_is_idempotent_without_network(tmp_path: Path) -> None:
    path = _write_batch(tmp_path / "batches", "batch-001", [PARSEABLE, UNPARSEABLE_WITH_DOI])
    cache = JsonCacheRepository(tmp_path / "cache.json")
    progress = JsonProgressRepository(tmp_path / "progress.json")
    fetch = MagicMock(return_value=LookupResult(ok=True, message=CROSSREF_MESSAGE))

    first = _pipeline(tmp_path, fetch=fetch, cache=cache, progress=progress).run([path])
    assert fetch.call_count == 1

    second_fetch = MagicMock()
    second = _pipeline(
        tmp_path,
        fetch=second_fetch,
        cache=JsonCacheRepository(tmp_path / "cache.json"),
        progress=JsonProgressRepository(tmp_path / "progress.json"),
    ).run([path])

    second_fetch.assert_not_called()
    assert second.processed == []
    assert second.skipped == ["batch-001"]
    assert second.stats == first.stats


def test_reprocessing_with_warm_cache_makes_no_network_calls(tmp_path: Path) -> None:
    path = _write_batch(tmp_path / "batches", "batch-001", [UNPARSEABLE_WITH_DOI])
    cache = MemoryCacheRepository()
    _pipeline(tmp_path, cache=cache).run([path])

    fetch = MagicMock()
    pipeline = _pipeline(tmp_path, fetch=fetch, cache=cache)
    summary = pipeline.run([path])

    fetch.assert_not_called()
    assert pipeline.resolver.network_calls == 0
    assert summary.processed[0].records[0].provenance is Provenance.EXTERNAL_RESOLVER


def test_cache_only_grows(tmp_path: Path) -> None:
    path = _write_batch(tmp_path / "batches", "batch-001", [UNPARSEABLE_WITH_DOI])
    cache = MemoryCacheRepository()
    _pipeline(tmp_path, cache=cache).run([path])
    before = cache.get(DOI)

    failing = MagicMock(return_value=LookupResult(ok=False, error="HTTP 500"))
    _pipeline(tmp_path, fetch=failing, cache=cache).run([path])

    assert cache.get(DOI) == before
    assert len(cache) == 1


def test_bad_batch_aborts_before_any_progress(tmp_path: Path) -> None:
    batches = tmp_path / "batches"
    good = _write_batch(batches, "batch-001", [PARSEABLE])
    bad = batches / "batch-002.json"
    bad.write_text("{broken", encoding="utf-8")
    progress = MemoryProgressRepository()

    with pytest.raises(BatchInputError):
        _pipeline(tmp_path, progress=progress).run([good, bad])

    assert progress.completed_batches == []
    assert not (tmp_path / "parsed").exists()


def test_completed_batches_are_skipped(tmp_path: Path) -> None:
    batches = tmp_path / "batches"
    first = _write_batch(batches, "batch-001", [PARSEABLE])
    second = _write_batch(batches, "batch-002", [PARSEABLE])
    progress = MemoryProgressRepository(completed=["batch-001"])

    summary = _pipeline(tmp_path, progress=progress).run([first, second])

    assert summary.skipped == ["batch-001"]
    assert [r.batch_id for r in summary.processed] == ["batch-002"]
    assert progress.completed_batches == ["batch-001", "batch-002"]


def test_cache_is_flushed_before_batch_is_marked(tmp_path: Path) -> None:
    path = _write_batch(tmp_path / "batches", "batch-001", [PARSEABLE])
    cache = MemoryCacheRepository()
    progress = MemoryProgressRepository()
    calls: list[str] = []
    mark_completed = progress.mark_completed
    cache.flush = lambda: calls.append("flush")  # type: ignore[method-assign]
    progress.mark_completed = lambda batch_id, stats: (calls.append("mark"), mark_completed(batch_id, stats))  # type: ignore[method-assign]

    _pipeline(tmp_path, cache=cache, progress=progress).run([path])

    assert calls == ["flush", "mark"]


def test_batch_outputs_are_written(tmp_path: Path) -> None:
    path = _write_batch(tmp_path / "batches", "batch-001", [PARSEABLE, GARBAGE])
    csv_path = tmp_path / "records.csv"

    summary = _pipeline(tmp_path, csv_path=csv_path).run([path])

    output = Path(summary.processed[0].output_path)
    assert output.name == "batch-001-parsed.json"
    items = json.loads(output.read_text(encoding="utf-8"))["items"]
    assert [item["valid"] for item in items] == [True, False]
    assert len(csv_path.read_text(encoding="utf-8").splitlines()) == 3


def test_parser_output_records_are_frozen_results(tmp_path: Path) -> None:
    parse = MagicMock(return_value=ParsedRecord.build(
        PARSEABLE,
        Provenance.CATEGORY_PARSER,
        entry_type="journal",
        title="A Study of X",
        authors=["Jane Doe"],
        year=2019,
    ))
    original = parse.return_value
    record = _pipeline(tmp_path, parse=parse).process_citation(Citation(PARSEABLE, Category.JOURNAL_EN, 0), 0)

    assert record is not original
    assert original.record_id is None
    assert record.record_id is not None
