"""Cache-backed Crossref resolver: DOI -> authoritative record."""

from __future__ import annotations

import logging
import os
import time
import urllib.parse
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import requests

from models import Citation, ParsedRecord, Provenance
from storage import CacheEntry, CacheRepository

CROSSREF_API_URL = "https://api.crossref.org/works"
CROSSREF_MAILTO = os.getenv("CROSSREF_MAILTO", "")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("CROSSREF_TIMEOUT_SECONDS", "10"))
MIN_INTERVAL_SECONDS = float(os.getenv("CROSSREF_MIN_INTERVAL_SECONDS", "0.1"))

LOGGER = logging.getLogger(__name__)

# Crossref work types -> local record types. Anything else is treated as a journal.
_TYPE_MAP: dict[str, str] = {
    "journal-article": "journal",
    "proceedings-article": "conference",
    "book-chapter": "book-chapter",
    "book-section": "book-chapter",
    "book-part": "book-chapter",
    "book": "book",
    "monograph": "book",
    "edited-book": "book",
    "reference-book": "book",
    "posted-content": "preprint",
    "dissertation": "thesis",
}


@dataclass(frozen=True, slots=True)
class LookupResult:
    """Outcome of one registry call. Failures carry the cause instead of raising."""

    ok: bool
    message: dict[str, Any] | None = None
    error: str | None = None


def fetch_work(doi: str, timeout: float = REQUEST_TIMEOUT_SECONDS) -> LookupResult:
    """Fetch one work record from Crossref. Never raises for expected failures."""
    url = f"{CROSSREF_API_URL}/{urllib.parse.quote(doi, safe='/')}"
    agent = "citation-pipeline/1.0"
    if CROSSREF_MAILTO:
        agent = f"{agent} (mailto:{CROSSREF_MAILTO})"

    try:
        response = requests.get(url, headers={"User-Agent": agent}, timeout=timeout)
    except requests.RequestException as exc:
        return LookupResult(ok=False, error=f"request failed: {exc}")

    if response.status_code != 200:
        return LookupResult(ok=False, error=f"HTTP {response.status_code}")

    try:
        body = response.json()
    except ValueError as exc:
        return LookupResult(ok=False, error=f"malformed JSON: {exc}")

    message = body.get("message") if isinstance(body, dict) else None
    if not isinstance(message, dict):
        return LookupResult(ok=False, error="unexpected Crossref response shape")
    return LookupResult(ok=True, message=message)


class CrossrefResolver:
    """Resolve DOIs through a durable cache, hitting Crossref at most once per DOI.

    The minimum delay between consecutive network calls is global to the resolver,
    not per identifier, because the registry is a shared rate-limited resource.
    """

    def __init__(
        self,
        cache: CacheRepository,
        fetch: Callable[[str], LookupResult] = fetch_work,
        min_interval: float = MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache = cache
        self._fetch = fetch
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call_at: float | None = None
        self.network_calls = 0

    def resolve(self, doi: str) -> dict[str, Any] | None:
        """Return the cached or freshly fetched Crossref message, or None on failure."""
        cached = self.cache.get(doi)
        if cached is not None:
            if cached.failed:
                LOGGER.debug("Crossref cache: known failure for doi=%s (%s)", doi, cached.error)
                return None
            LOGGER.debug("Crossref cache hit for doi=%s", doi)
            return cached.record

        self._wait_for_slot()
        result = self._fetch(doi)
        self.network_calls += 1

        if result.ok and result.message is not None:
            self.cache.put(CacheEntry(identifier=doi, record=result.message))
            LOGGER.info("Crossref resolved doi=%s", doi)
            return result.message

        self.cache.put(CacheEntry(identifier=doi, error=result.error or "unknown error"))
        LOGGER.warning("Crossref lookup failed for doi=%s: %s", doi, result.error)
        return None

    def resolve_record(self, doi: str, citation: Citation) -> ParsedRecord | None:
        message = self.resolve(doi)
        if message is None:
            return None
        return crossref_to_record(message, citation)

    def _wait_for_slot(self) -> None:
        now = self._clock()
        if self._last_call_at is not None:
            remaining = self._min_interval - (now - self._last_call_at)
            if remaining > 0:
                self._sleep(remaining)
                now = self._clock()
        self._last_call_at = now


def crossref_to_record(message: dict[str, Any], citation: Citation) -> ParsedRecord:
    """Map a Crossref work message onto a ParsedRecord."""
    entry_type = _TYPE_MAP.get(str(message.get("type") or ""), "journal")
    container = _first(message.get("container-title"))

    return ParsedRecord.build(
        citation.raw_text,
        Provenance.EXTERNAL_RESOLVER,
        entry_type=entry_type,
        title=_first(message.get("title")),
        authors=_authors(message.get("author")),
        year=_year(message),
        journal=None if entry_type == "conference" else container,
        conference=container if entry_type == "conference" else None,
        volume=message.get("volume"),
        issue=message.get("issue"),
        pages=message.get("page"),
        publisher=message.get("publisher"),
        doi=message.get("DOI"),
        url=message.get("URL"),
        category=citation.category,
    )


def _authors(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    authors: list[str] = []
    for person in raw:
        if not isinstance(person, dict):
            continue
        given = _as_str(person.get("given"))
        family = _as_str(person.get("family"))
        name = _as_str(person.get("name"))
        if given and family:
            authors.append(f"{given} {family}")
        elif name:
            authors.append(name)
        elif family:
            authors.append(family)
    return authors


def _year(message: dict[str, Any]) -> int | None:
    for key in ("published-print", "published-online", "issued"):
        block = message.get(key)
        if not isinstance(block, dict):
            continue
        parts = block.get("date-parts") or []
        try:
            year = parts[0][0]
        except (IndexError, TypeError):
            continue
        if isinstance(year, int):
            return year
        if isinstance(year, str) and year.isdigit():
            return int(year)
    return None


def _first(value: Any) -> str | None:
    if isinstance(value, list):
        value = value[0] if value else None
    return _as_str(value)


def _as_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None
