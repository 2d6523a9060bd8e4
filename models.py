"""Shared typed models for the citation pipeline."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from enum import StrEnum
from typing import Any

LOGGER = logging.getLogger(__name__)

RECORD_TYPES: frozenset[str] = frozenset({
    "journal",
    "conference",
    "book",
    "book-chapter",
    "review",
    "presentation",
    "preprint",
    "thesis",
})


class Category(StrEnum):
    """Section of the source website a citation was scraped from."""

    JOURNAL_JA = "journal-ja"
    JOURNAL_EN = "journal-en"
    CONFERENCE = "conference"
    REVIEW = "review"
    BOOK = "book"
    ORAL_PRESENTATION = "oral-presentation"
    SEMINAR = "seminar"
    THESIS = "thesis"
    OTHER = "other"

    @classmethod
    def from_label(cls, label: str) -> Category:
        """Map a scraper label (including legacy names) onto a Category."""
        key = (label or "").strip().lower()
        if key in _CATEGORY_ALIASES:
            return _CATEGORY_ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            LOGGER.warning("Unknown category label %r, treating as 'other'", label)
            return cls.OTHER

    @property
    def default_type(self) -> str:
        """Record type assumed when a strategy cannot tell."""
        return _DEFAULT_TYPES[self]


_CATEGORY_ALIASES: dict[str, Category] = {
    "original_ja": Category.JOURNAL_JA,
    "original_en": Category.JOURNAL_EN,
    "oral": Category.ORAL_PRESENTATION,
    "seminars": Category.SEMINAR,
    "theses": Category.THESIS,
}

_DEFAULT_TYPES: dict[Category, str] = {
    Category.JOURNAL_JA: "journal",
    Category.JOURNAL_EN: "journal",
    Category.CONFERENCE: "conference",
    Category.REVIEW: "review",
    Category.BOOK: "book",
    Category.ORAL_PRESENTATION: "presentation",
    Category.SEMINAR: "presentation",
    Category.THESIS: "thesis",
    Category.OTHER: "journal",
}


class Provenance(StrEnum):
    """Which resolution strategy produced a record."""

    CATEGORY_PARSER = "category-parser"
    EXTERNAL_RESOLVER = "external-resolver"
    FALLBACK_RESOLVER = "fallback-resolver"


@dataclass(frozen=True, slots=True)
class Citation:
    """One raw citation string as produced by the scraper."""

    raw_text: str
    category: Category
    index: int


@dataclass(frozen=True, slots=True)
class Batch:
    """A named group of citations sharing a category, checkpointed as one unit."""

    batch_id: str
    category: Category
    citations: tuple[Citation, ...]
    title: str | None = None


@dataclass(frozen=True, slots=True)
class ParsedRecord:
    """Canonical output unit. Never mutated; use dataclasses.replace."""

    raw_text: str
    provenance: Provenance
    entry_type: str | None = None
    title: str | None = None
    authors: tuple[str, ...] = ()
    year: Any = None
    journal: str | None = None
    conference: str | None = None
    volume: str | None = None
    issue: str | None = None
    pages: str | None = None
    publisher: str | None = None
    location: str | None = None
    doi: str | None = None
    arxiv: str | None = None
    url: str | None = None
    awards: tuple[str, ...] = ()
    language: str | None = None
    category: Category | None = None
    record_id: str | None = None
    valid: bool = False
    errors: tuple[str, ...] = ()

    @classmethod
    def build(cls, raw_text: str, provenance: Provenance, **values: Any) -> ParsedRecord:
        """Normalize loosely-typed strategy output into a ParsedRecord.

        Strings are stripped and blanks become None, numeric-string years become
        ints, and author/award sequences become tuples. Values the validator must
        judge (an out-of-range year, an unknown type) are kept as given.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise TypeError(f"Unknown ParsedRecord fields: {sorted(unknown)}")

        cleaned: dict[str, Any] = {}
        for name, value in values.items():
            if name in ("authors", "awards"):
                cleaned[name] = _as_str_tuple(value, keep_blank=name == "authors")
            elif name == "year":
                cleaned[name] = _coerce_year(value)
            elif name in ("valid", "category", "errors"):
                cleaned[name] = value
            else:
                cleaned[name] = _clean_str(value)
        return cls(raw_text=raw_text, provenance=provenance, **cleaned)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON/CSV output shape."""
        return {
            "id": self.record_id,
            "type": self.entry_type,
            "title": self.title,
            "authors": list(self.authors),
            "year": self.year,
            "journal": self.journal,
            "conference": self.conference,
            "volume": self.volume,
            "issue": self.issue,
            "pages": self.pages,
            "publisher": self.publisher,
            "location": self.location,
            "doi": self.doi,
            "arxiv": self.arxiv,
            "url": self.url,
            "awards": list(self.awards),
            "language": self.language,
            "category": str(self.category) if self.category else None,
            "provenance": str(self.provenance),
            "valid": self.valid,
            "errors": list(self.errors),
            "raw_text": self.raw_text,
        }


@dataclass(slots=True)
class RunStats:
    """Aggregate counters persisted with the progress state."""

    total: int = 0
    category_parser: int = 0
    external_resolver: int = 0
    fallback_resolver: int = 0
    valid: int = 0
    invalid: int = 0

    def record(self, record: ParsedRecord) -> None:
        self.total += 1
        if record.provenance is Provenance.CATEGORY_PARSER:
            self.category_parser += 1
        elif record.provenance is Provenance.EXTERNAL_RESOLVER:
            self.external_resolver += 1
        else:
            self.fallback_resolver += 1
        if record.valid:
            self.valid += 1
        else:
            self.invalid += 1

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RunStats:
        data = data or {}
        return cls(**{f.name: int(data.get(f.name, 0) or 0) for f in fields(cls)})


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Outcome of one processed batch."""

    batch_id: str
    category: Category
    records: tuple[ParsedRecord, ...] = field(default_factory=tuple)
    output_path: str | None = None

    @property
    def valid_count(self) -> int:
        return sum(1 for r in self.records if r.valid)

    @property
    def invalid_count(self) -> int:
        return len(self.records) - self.valid_count


@dataclass(slots=True)
class RunSummary:
    """What one pipeline run did, for the end-of-run report."""

    stats: RunStats
    processed: list[BatchResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_str_tuple(value: Any, keep_blank: bool) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Iterable):
        return ()
    items = [str(v).strip() if v is not None else "" for v in value]
    if keep_blank:
        return tuple(items)
    return tuple(item for item in items if item)


def _coerce_year(value: Any) -> Any:
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return int(text)
        return text
    return value
