"""Category-keyed regex extractors: the cheapest strategy, always tried first.

Each registered CategoryParser applies the same steps to a raw citation:

  (a) author block anchored at the start, ending at a colon before the title quote
  (b) title inside the category's quoting convention
  (c) venue fields (journal/volume/issue, conference, publisher, event, location)
  (d) year, tolerant of a trailing 年 / month / day suffix
  (e) inline DOI or DOI URL
  (f) bracketed award / invited-paper annotations

A parser returns None when it cannot locate authors or title. It never returns a
partially-filled record, so the validator cannot accept a garbage record whose
shape happens to be valid.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from extractors import extract_arxiv, extract_awards, extract_doi
from models import Category, Citation, ParsedRecord, Provenance

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QuoteStyle:
    """Characters that open and close a title."""

    opening: str
    closing: str

    def title_pattern(self) -> re.Pattern[str]:
        opening = re.escape(self.opening)
        closing = re.escape(self.closing)
        return re.compile(rf"[{opening}]([^{opening}{closing}]+)[{closing}]")


CORNER_BRACKETS = QuoteStyle(opening="「『", closing="」』")
DOUBLE_QUOTES = QuoteStyle(opening='"“', closing='"”')

_INDEX_PREFIX = r"^\s*(?:[\(（]\d+[\)）]\s*)?"

_AUTHOR_SPLIT = re.compile(r"\s*[,，、;；]\s*(?:and\s+)?|\s+and\s+|\s*&\s*")
_AUTHOR_SUFFIX = re.compile(r"\s*(?:他|ほか|et\s+al\.?)$", re.IGNORECASE)
_NAME_SUFFIX = re.compile(r"^(?:Jr|Sr|II|III|IV)\.?$", re.IGNORECASE)

_YEAR = re.compile(
    r"(?:^|[\s,，:：(（])((?:19|20)\d{2})(?=年|\s*(?:[(（\[【,，.。)）;；]|$|doi))",
    re.IGNORECASE,
)
_PAGES = re.compile(r"(?<![A-Za-z])pp?\.\s*(\d+(?:\s*[-–—~〜]\s*\d+)?)")
_PAGE_DASH = re.compile(r"\s*[-–—~〜]\s*")

_JOURNAL_VENUE = re.compile(
    r"^[\s.,，、。]*(?P<venue>[^\d「」『』\"“”(（]+?)\s*(?P<volume>\d+)\s*"
    r"(?:[(（](?P<issue>[^)）]+)[)）])?\s*(?=[:：,，]|pp?\.|$)"
)
_PROCEEDINGS_VENUE = re.compile(r"^[\s.,，、。]*(?P<venue>(?:In\s+)?Proc(?:eedings|\.)[^:：(（\[【]+)", re.IGNORECASE)
_EVENT_VENUE = re.compile(r"^[\s.,，、。]*(?P<venue>[^(（:：\[【]+)")
_PUBLISHER_VENUE = re.compile(r"^[\s.,，、。]*(?P<venue>[^,，、(（\[【\d][^,，、(（\[【]*?)\s*(?:[,，、]|$)")
_LOCATION = re.compile(r"[(（]\s*([^,，\d()（）]+?)\s*[,，]\s*(?:19|20)\d{2}")

_VENUE_PAGES_TAIL = re.compile(r"[,，]?\s*(?<![A-Za-z])pp?\..*$")
_VENUE_YEAR_TAIL = re.compile(r"[,，]?\s*(?:19|20)\d{2}\s*(?:年[\d月日\s]*)?$")

VenueExtractor = Callable[[str], dict[str, str | None]]


def split_authors(block: str) -> list[str]:
    """Split an author block on Japanese and Western separators."""
    authors: list[str] = []
    for part in _AUTHOR_SPLIT.split(block):
        name = _AUTHOR_SUFFIX.sub("", part.strip()).strip(" .")
        if not name or name[0].isdigit():
            continue
        if authors and _NAME_SUFFIX.match(name):
            authors[-1] = f"{authors[-1]}, {part.strip()}"
            continue
        authors.append(name)
    return authors


def find_year(text: str) -> int | None:
    match = _YEAR.search(text)
    return int(match.group(1)) if match else None


def find_pages(text: str) -> str | None:
    match = _PAGES.search(text)
    return _PAGE_DASH.sub("-", match.group(1)) if match else None


def _clean_venue(text: str | None) -> str | None:
    if not text:
        return None
    text = _VENUE_PAGES_TAIL.sub("", text)
    text = _VENUE_YEAR_TAIL.sub("", text)
    text = text.strip(" \t,，、.。:：")
    return text or None


def journal_venue(tail: str) -> dict[str, str | None]:
    """`<Venue> <volume>(<issue>): pp.<pages>`"""
    match = _JOURNAL_VENUE.match(tail)
    if not match:
        return {}
    return {
        "journal": _clean_venue(match.group("venue")),
        "volume": match.group("volume"),
        "issue": match.group("issue"),
    }


def conference_venue(tail: str) -> dict[str, str | None]:
    match = _PROCEEDINGS_VENUE.match(tail) or _EVENT_VENUE.match(tail)
    return {
        "conference": _clean_venue(match.group("venue")) if match else None,
        "location": find_location(tail),
    }


def publisher_venue(tail: str) -> dict[str, str | None]:
    match = _PUBLISHER_VENUE.match(tail)
    return {"publisher": _clean_venue(match.group("venue")) if match else None}


def find_location(tail: str) -> str | None:
    match = _LOCATION.search(tail)
    return match.group(1).strip() if match else None


@dataclass(frozen=True, slots=True)
class CategoryParser:
    """Regex extractor for one citation house style."""

    category: Category
    record_type: str
    quotes: tuple[QuoteStyle, ...]
    venue: VenueExtractor

    def parse(self, raw: str) -> ParsedRecord | None:
        openings = re.escape("".join(q.opening for q in self.quotes))
        author_match = re.match(
            rf"{_INDEX_PREFIX}([^:：{openings}]+?)[\s,，]*[:：]?\s*(?=[{openings}])",
            raw,
        )
        if not author_match:
            return None
        authors = split_authors(author_match.group(1))
        if not authors:
            return None

        style = next(q for q in self.quotes if raw[author_match.end()] in q.opening)
        title_match = style.title_pattern().match(raw, author_match.end())
        if not title_match:
            return None
        title = title_match.group(1).strip().rstrip(".。").strip()
        if not title:
            return None

        tail = raw[title_match.end():]
        return ParsedRecord.build(
            raw,
            Provenance.CATEGORY_PARSER,
            entry_type=self.record_type,
            title=title,
            authors=authors,
            year=find_year(tail),
            pages=find_pages(tail),
            doi=extract_doi(raw),
            arxiv=extract_arxiv(raw),
            awards=extract_awards(raw),
            category=self.category,
            **self.venue(tail),
        )


_REGISTRY: dict[Category, CategoryParser] = {}


def register(parser: CategoryParser) -> None:
    """Add or replace the parser for a category."""
    _REGISTRY[parser.category] = parser


def get_parser(category: Category) -> CategoryParser | None:
    return _REGISTRY.get(category)


def parse(citation: Citation) -> ParsedRecord | None:
    """Dispatch a citation to its category parser; None when nothing matches."""
    parser = _REGISTRY.get(citation.category)
    if parser is None:
        LOGGER.debug("No category parser for %s", citation.category)
        return None
    return parser.parse(citation.raw_text)


for _parser in (
    CategoryParser(Category.JOURNAL_JA, "journal", (CORNER_BRACKETS,), journal_venue),
    CategoryParser(Category.JOURNAL_EN, "journal", (DOUBLE_QUOTES,), journal_venue),
    CategoryParser(Category.CONFERENCE, "conference", (DOUBLE_QUOTES,), conference_venue),
    CategoryParser(Category.REVIEW, "review", (CORNER_BRACKETS,), journal_venue),
    CategoryParser(Category.BOOK, "book", (CORNER_BRACKETS, DOUBLE_QUOTES), publisher_venue),
    CategoryParser(Category.ORAL_PRESENTATION, "presentation", (CORNER_BRACKETS, DOUBLE_QUOTES), conference_venue),
    CategoryParser(Category.SEMINAR, "presentation", (CORNER_BRACKETS, DOUBLE_QUOTES), conference_venue),
):
    register(_parser)
