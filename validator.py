"""Single quality gate applied to every strategy's output."""

from __future__ import annotations

import re
from dataclasses import dataclass

from models import RECORD_TYPES, ParsedRecord

MIN_YEAR = 1950
MAX_YEAR = 2030

_DOI_FORMAT = re.compile(r"^10\.\d{4,}/\S+$")


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()


def is_valid_doi(value: str | None) -> bool:
    """Return True if value looks like a registrable DOI (10.<4+ digits>/<suffix>)."""
    return bool(value) and bool(_DOI_FORMAT.match(value))


def validate(record: ParsedRecord) -> ValidationResult:
    """Check the minimal schema contract. Pure; never raises."""
    errors: list[str] = []

    if not isinstance(record.title, str) or not record.title.strip():
        errors.append("missing title")

    if not record.authors:
        errors.append("missing authors")
    else:
        for position, author in enumerate(record.authors, 1):
            if not isinstance(author, str) or not author.strip():
                errors.append(f"blank author at position {position}")

    if not record.entry_type:
        errors.append("missing type")
    elif record.entry_type not in RECORD_TYPES:
        errors.append(f"invalid type: {record.entry_type}")

    year = record.year
    if year is not None:
        # bool is an int subclass; reject it explicitly.
        if isinstance(year, bool) or not isinstance(year, int) or not MIN_YEAR <= year <= MAX_YEAR:
            errors.append(f"invalid year: {year}")

    if record.doi is not None and not is_valid_doi(record.doi):
        errors.append(f"invalid DOI: {record.doi}")

    return ValidationResult(valid=not errors, errors=tuple(errors))
