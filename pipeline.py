"""Batch orchestrator: strategy chain, validation gate, checkpointing."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path
from typing import Any

import category_parsers
import csv_sink
from batch_io import load_batch, write_batch_output
from crossref_client import CrossrefResolver
from extractors import detect_language, extract_arxiv, extract_awards, extract_doi, make_record_id
from fallback_resolver import resolve_by_inference
from models import Batch, BatchResult, Citation, ParsedRecord, Provenance, RunSummary
from storage import CacheRepository, ProgressRepository
from validator import validate

LOGGER = logging.getLogger(__name__)


class CitationPipeline:
    """Turn batches of raw citations into validated records, one record per citation.

    Strategies run cheapest first: the category parser, then Crossref when the
    raw text carries a DOI, then the inference fallback. The first two are
    accepted only if their output validates; the fallback is always accepted and
    validated afterwards so a failed citation still leaves an invalid record.
    """

    def __init__(
        self,
        cache: CacheRepository,
        progress: ProgressRepository,
        output_dir: str | Path,
        parse: Callable[[Citation], ParsedRecord | None] = category_parsers.parse,
        resolver: CrossrefResolver | None = None,
        fallback: Callable[[Citation], ParsedRecord] = resolve_by_inference,
        csv_path: str | Path | None = None,
    ) -> None:
        self.cache = cache
        self.progress = progress
        self.output_dir = Path(output_dir)
        self.resolver = resolver or CrossrefResolver(cache)
        self.csv_path = csv_path
        self.stats = progress.stats
        self._parse = parse
        self._fallback = fallback

    def run(self, batch_paths: Iterable[str | Path]) -> RunSummary:
        """Process every batch not yet completed, in the given order."""
        summary = RunSummary(stats=self.stats)
        pending: list[Batch] = []
        for path in batch_paths:
            batch_id = Path(path).stem
            if self.progress.is_completed(batch_id):
                LOGGER.info("Skipping completed batch %s", batch_id)
                summary.skipped.append(batch_id)
                continue
            # Load everything up front so a bad input file aborts before any progress is marked.
            pending.append(load_batch(path))

        LOGGER.info("Batches pending=%s skipped=%s", len(pending), len(summary.skipped))
        for position, batch in enumerate(pending, 1):
            LOGGER.info(
                "[%s/%s] %s (%s, %s items)",
                position,
                len(pending),
                batch.batch_id,
                batch.category,
                len(batch.citations),
            )
            summary.processed.append(self.process_batch(batch))

        summary.stats = self.stats
        return summary

    def process_batch(self, batch: Batch) -> BatchResult:
        records = []
        for citation in batch.citations:
            # The running index spans the whole run so derived ids stay unique across batches.
            records.append(self.process_citation(citation, self.stats.total))

        output_path = write_batch_output(batch, records, self.output_dir)
        if self.csv_path is not None:
            csv_sink.write_records(records, batch.batch_id, csv_path=self.csv_path)

        # Cache first: a batch marked completed must never depend on unsaved lookups.
        self.cache.flush()
        self.progress.mark_completed(batch.batch_id, self.stats)

        result = BatchResult(
            batch_id=batch.batch_id,
            category=batch.category,
            records=tuple(records),
            output_path=str(output_path),
        )
        LOGGER.info(
            "Completed %s: %s valid, %s invalid",
            batch.batch_id,
            result.valid_count,
            result.invalid_count,
        )
        return result

    def process_citation(self, citation: Citation, index: int) -> ParsedRecord:
        raw = citation.raw_text
        doi = extract_doi(raw)
        arxiv = extract_arxiv(raw)

        record = self._accept_if_valid(self._attempt("category parser", self._parse, citation))

        if record is None and doi:
            record = self._accept_if_valid(
                self._attempt("external resolver", self.resolver.resolve_record, doi, citation)
            )

        if record is None:
            record = self._attempt("fallback resolver", self._fallback, citation)

        if record is None:
            LOGGER.error("Every strategy failed for citation %s, recording an invalid stub", citation.index)
            record = ParsedRecord.build(
                raw,
                Provenance.FALLBACK_RESOLVER,
                entry_type=citation.category.default_type,
                category=citation.category,
            )

        record = self._finalize(record, citation, doi, arxiv, index)
        self.stats.record(record)
        LOGGER.debug("Citation %s -> %s valid=%s", citation.index, record.provenance, record.valid)
        return record

    def _attempt(self, name: str, strategy: Callable[..., ParsedRecord | None], *args: Any) -> ParsedRecord | None:
        try:
            return strategy(*args)
        except Exception:
            LOGGER.exception("%s raised, treating as no result", name)
            return None

    @staticmethod
    def _accept_if_valid(record: ParsedRecord | None) -> ParsedRecord | None:
        if record is None:
            return None
        result = validate(record)
        if not result.valid:
            LOGGER.debug("Rejecting %s output: %s", record.provenance, ", ".join(result.errors))
            return None
        return record

    @staticmethod
    def _finalize(
        record: ParsedRecord,
        citation: Citation,
        doi: str | None,
        arxiv: str | None,
        index: int,
    ) -> ParsedRecord:
        raw = citation.raw_text
        first_author = record.authors[0] if record.authors else None
        record = replace(
            record,
            language=detect_language(raw),
            awards=tuple(dict.fromkeys((*record.awards, *extract_awards(raw)))),
            doi=record.doi or doi,
            arxiv=record.arxiv or arxiv,
            category=citation.category,
            record_id=make_record_id(record.year, first_author, record.title, index),
        )
        result = validate(record)
        return replace(record, valid=result.valid, errors=result.errors)
