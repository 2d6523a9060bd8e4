"""Strategy-independent text heuristics: identifiers, awards, language, record ids."""

from __future__ import annotations

import os
import re
import unicodedata

JA_SCRIPT_RATIO = float(os.getenv("JA_SCRIPT_RATIO", "0.15"))

_DOI_BODY = r"10\.\d{4,9}/[^\s\"'<>,，、」）\]]+"

# Ordered from most to least explicit.
_DOI_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"doi\s*[:：]\s*({_DOI_BODY})", re.IGNORECASE),
    re.compile(rf"https?://(?:dx\.)?doi\.org/({_DOI_BODY})", re.IGNORECASE),
    re.compile(rf"[\(（]({_DOI_BODY})[\)）]"),
    re.compile(rf"(?<![\w./])({_DOI_BODY})"),
)

_DOI_TRAILING = re.compile(r"[.,;:\]）]+$")

_ARXIV_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"arxiv\.org/(?:abs|pdf)/(\d{4}\.\d{4,5})(?:v\d+)?", re.IGNORECASE),
    re.compile(r"arxiv\s*[:：]?\s*(\d{4}\.\d{4,5})(?:v\d+)?", re.IGNORECASE),
)

_AWARD_PATTERN = re.compile(r"\[([^\[\]]+)\]|【([^【】]+)】")

# Hiragana, katakana, CJK unified ideographs (incl. extension A), half-width katakana.
_JA_SCRIPT = re.compile(r"[\u3040-\u309f\u30a0-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uff66-\uff9f]")


def extract_doi(text: str) -> str | None:
    """Return the first DOI found in text, or None."""
    if not text:
        return None
    for pattern in _DOI_PATTERNS:
        match = pattern.search(text)
        if match:
            return _trim_doi(match.group(1)) or None
    return None


def extract_arxiv(text: str) -> str | None:
    """Return a bare arXiv id (version suffix dropped), or None."""
    if not text:
        return None
    for pattern in _ARXIV_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def extract_awards(text: str) -> list[str]:
    """Return bracketed annotations that look like award or invited markers."""
    if not text:
        return []
    awards: list[str] = []
    for match in _AWARD_PATTERN.finditer(text):
        value = (match.group(1) or match.group(2) or "").strip()
        if len(value) <= 1 or value.isdigit():
            continue
        if value not in awards:
            awards.append(value)
    return awards


def detect_language(text: str, threshold: float | None = None) -> str:
    """Return 'ja' when Japanese script makes up enough of the text, else 'en'."""
    threshold = JA_SCRIPT_RATIO if threshold is None else threshold
    chars = [c for c in text or "" if not c.isspace()]
    if not chars:
        return "en"
    ja = sum(1 for c in chars if _JA_SCRIPT.match(c))
    return "ja" if ja / len(chars) >= threshold else "en"


def make_record_id(year: object, first_author: str | None, title: str | None, index: int) -> str:
    """Deterministic, filename-safe record id."""
    year_part = str(year) if isinstance(year, int) else "unknown"
    author_part = re.sub(r"[^a-z0-9]", "", _ascii_fold(first_author or "").lower())[:15] or "unknown"
    title_part = re.sub(r"[^a-z0-9]+", "-", _ascii_fold(title or "").lower())[:30].strip("-") or "untitled"
    return f"{year_part}-{author_part}-{title_part}-{index}"


def _trim_doi(doi: str) -> str:
    doi = doi.strip()
    while True:
        trimmed = _DOI_TRAILING.sub("", doi)
        # An unbalanced closing paren belongs to the surrounding text.
        if trimmed.endswith(")") and trimmed.count("(") < trimmed.count(")"):
            trimmed = trimmed[:-1]
        if trimmed == doi:
            return doi
        doi = trimmed


def _ascii_fold(value: str) -> str:
    return unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
