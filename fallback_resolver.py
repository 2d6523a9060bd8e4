"""Last-resort resolution through a text-generation model, with a regex safety net.

resolve_by_inference() always returns a record. When the model is unreachable or
its answer cannot be used, the same raw text goes through regex_fallback() so the
citation still produces something the validator can judge.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from json import JSONDecodeError
from typing import Any

from extractors import extract_doi
import llm_client
from llm_client import InferenceResult
from models import RECORD_TYPES, Citation, ParsedRecord, Provenance

LOGGER = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 150

_EXAMPLE_TITLE = "Cortical dynamics of auditory prediction"

PROMPT = """Parse this academic citation into structured fields.

EXAMPLE INPUT:
(1) Taro Yamada, Jane Doe: "Cortical dynamics of auditory prediction." Journal of Neuroscience 45(3): pp. 123-145, 2020

EXAMPLE OUTPUT:
<record>{"authors":["Taro Yamada","Jane Doe"],"title":"Cortical dynamics of auditory prediction","journal":"Journal of Neuroscience","volume":"45","issue":"3","pages":"123-145","year":2020,"type":"journal"}</record>

RULES:
- authors: every author name as an array (Japanese names such as 山田太郎 are fine)
- title: the paper title only, without quotes, venue or year
- year: 4-digit number
- type: one of journal, conference, book, book-chapter, review, presentation, preprint, thesis
- leave out any field that is not present in the citation

NOW PARSE THIS:
{citation}

Answer with exactly one JSON object wrapped in record tags like the example output, nothing else."""

_THINK_END = "</think>"
_RECORD_BLOCK = re.compile(r"<record>\s*(.*?)\s*</record>", re.DOTALL)

_FALLBACK_AUTHORS_BEFORE_TITLE = re.compile(r"^\s*(?:[\(（]\d+[\)）]\s*)?(.+?)[:：]\s*[「『\"“]")
_FALLBACK_AUTHORS_LEADING = re.compile(r"^\s*[\(（]\d+[\)）]\s*([^:：「『\"“]+)")
_FALLBACK_AUTHOR_SPLIT = re.compile(r"\s*(?:[,，、;；&]|\band\b)\s*")
_FALLBACK_QUOTED_TITLE = re.compile(r"[「『\"“]([^」』\"”]+)[」』\"”]")
_FALLBACK_TITLE_AFTER_COLON = re.compile(r"[:：]\s*[「『\"“]?([^」』\"”，,]+)")
_FALLBACK_YEAR = re.compile(r"[,，\s(（]((?:19|20)\d{2})(?:[年\s,，.)）]|$)")
_LEADING_INDEX = re.compile(r"^\s*[\(（]\d+[\)）]")

_MODEL_FIELDS = ("journal", "conference", "volume", "issue", "pages", "publisher", "location", "doi", "url")


class ModelResponseError(ValueError):
    """The model answered, but not with a usable record."""


def build_prompt(raw_text: str) -> str:
    return PROMPT.replace("{citation}", raw_text)


def parse_model_response(text: str) -> dict[str, Any]:
    """Pull the record object out of free-form model output.

    Reasoning before the last </think> is discarded. The last <record> block
    holding a JSON object other than the prompt's worked example wins; otherwise
    the first such object anywhere in the text is used.
    """
    if _THINK_END in text:
        text = text.rsplit(_THINK_END, 1)[1]

    parsed = _last_record_block(text)
    if parsed is None:
        parsed = _extract_first_json_object(text)

    authors = parsed.get("authors")
    if not isinstance(authors, list) or not [a for a in authors if isinstance(a, str) and a.strip()]:
        raise ModelResponseError("missing authors")
    title = parsed.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ModelResponseError("missing title")
    return parsed


def _last_record_block(content: str) -> dict[str, Any] | None:
    for block in reversed(_RECORD_BLOCK.findall(content)):
        try:
            candidate = json.loads(block)
        except JSONDecodeError:
            LOGGER.debug("Skipping undecodable <record> block: %.80s", block)
            continue
        if not isinstance(candidate, dict):
            continue
        if candidate.get("title") == _EXAMPLE_TITLE:
            LOGGER.debug("Skipping echoed worked example in model output")
            continue
        return candidate
    return None


def _extract_first_json_object(content: str) -> dict[str, Any]:
    decoder = json.JSONDecoder()
    for index, char in enumerate(content):
        if char != "{":
            continue
        try:
            candidate, _ = decoder.raw_decode(content[index:])
        except JSONDecodeError:
            continue
        if not isinstance(candidate, dict):
            continue
        if candidate.get("title") == _EXAMPLE_TITLE:
            LOGGER.debug("Skipping echoed worked example in model output")
            continue
        return candidate
    raise ModelResponseError("no JSON object in model output")


def extract_authors(text: str) -> list[str]:
    match = _FALLBACK_AUTHORS_BEFORE_TITLE.match(text)
    max_length = 60
    if not match:
        # Japanese lists often carry no colon: "(3) 山田太郎，鈴木花子 「...」"
        match = _FALLBACK_AUTHORS_LEADING.match(text)
        max_length = 30
    if not match:
        return []
    names = (name.strip(" .") for name in _FALLBACK_AUTHOR_SPLIT.split(match.group(1)))
    return [n for n in names if 1 < len(n) < max_length and not n[0].isdigit()]


def extract_title(text: str) -> str | None:
    match = _FALLBACK_QUOTED_TITLE.search(text)
    if not match:
        match = _FALLBACK_TITLE_AFTER_COLON.search(text)
    if not match:
        return None
    return match.group(1).strip().rstrip(".。").strip() or None


def extract_year(text: str) -> int | None:
    match = _FALLBACK_YEAR.search(text)
    return int(match.group(1)) if match else None


def regex_fallback(citation: Citation) -> ParsedRecord:
    """Best-effort record from the raw text alone."""
    raw = citation.raw_text
    return ParsedRecord.build(
        raw,
        Provenance.FALLBACK_RESOLVER,
        entry_type=citation.category.default_type,
        title=extract_title(raw),
        authors=extract_authors(raw),
        year=extract_year(raw),
        category=citation.category,
    )


def _looks_like_citation(title: str) -> bool:
    return len(title) > MAX_TITLE_LENGTH or "Proceedings" in title or bool(_LEADING_INDEX.match(title))


def _record_from_model(parsed: dict[str, Any], citation: Citation) -> ParsedRecord:
    raw = citation.raw_text
    title = parsed["title"].strip()
    if _looks_like_citation(title):
        title = extract_title(raw) or title

    year = parsed.get("year")
    if isinstance(year, bool) or not isinstance(year, (int, str)) or not str(year).strip().isdigit():
        year = extract_year(raw)

    entry_type = parsed.get("type")
    if entry_type not in RECORD_TYPES:
        entry_type = citation.category.default_type

    values = {name: parsed.get(name) for name in _MODEL_FIELDS if isinstance(parsed.get(name), (str, int))}
    if "doi" in values:
        # a missing DOI is filled in from the raw text afterwards
        doi = extract_doi(str(values.pop("doi")))
        if doi:
            values["doi"] = doi
    return ParsedRecord.build(
        raw,
        Provenance.FALLBACK_RESOLVER,
        entry_type=entry_type,
        title=title,
        authors=[a for a in parsed["authors"] if isinstance(a, str)],
        year=year,
        category=citation.category,
        **values,
    )


def resolve_by_inference(
    citation: Citation,
    generate: Callable[[str], InferenceResult] = llm_client.generate,
) -> ParsedRecord:
    result = generate(build_prompt(citation.raw_text))
    if not result.ok:
        LOGGER.warning("Model unavailable for citation %s, using regex fallback: %s", citation.index, result.error)
        return regex_fallback(citation)

    try:
        parsed = parse_model_response(result.text)
    except ModelResponseError as exc:
        LOGGER.warning("Unusable model output for citation %s, using regex fallback: %s", citation.index, exc)
        return regex_fallback(citation)

    return _record_from_model(parsed, citation)
