"""Flat CSV export of parsed records, one row per record."""

from __future__ import annotations

import csv
import logging
import os
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from models import ParsedRecord
from storage import StorageError

RECORDS_CSV_PATH = os.getenv("RECORDS_CSV_PATH", "parsed_records.csv")

LOGGER = logging.getLogger(__name__)

LIST_SEPARATOR = "; "

CSV_COLUMNS = [
    "id",
    "batch_id",
    "category",
    "type",
    "title",
    "authors",        # joined with LIST_SEPARATOR
    "year",
    "journal",
    "conference",
    "volume",
    "issue",
    "pages",
    "publisher",
    "location",
    "doi",
    "arxiv",
    "url",
    "awards",         # joined with LIST_SEPARATOR
    "language",
    "provenance",     # category-parser | external-resolver | fallback-resolver
    "valid",
    "errors",         # validator violations, joined with LIST_SEPARATOR
    "raw_text",
    "created_at",
]


def _existing_ids(path: Path) -> set[str]:
    if not path.exists():
        return set()
    with path.open(newline="", encoding="utf-8") as fh:
        return {row["id"] for row in csv.DictReader(fh) if row.get("id")}


def record_already_exists(record_id: str, csv_path: str | Path | None = None) -> bool:
    """Return True if a row with this record id is already in the CSV."""
    return record_id in _existing_ids(Path(csv_path or RECORDS_CSV_PATH))


def write_records(
    records: Iterable[ParsedRecord],
    batch_id: str,
    csv_path: str | Path | None = None,
) -> int:
    """Append rows for records not yet exported (creating the header if needed).

    Returns the number of rows written.
    """
    path = Path(csv_path or RECORDS_CSV_PATH)
    try:
        existing = _existing_ids(path)
    except OSError as exc:
        raise StorageError(f"Cannot read {path}: {exc}") from exc
    created_at = datetime.now(UTC).isoformat()

    rows = []
    for record in records:
        if record.record_id in existing:
            LOGGER.debug("Skipping CSV row for id=%s: already exported", record.record_id)
            continue
        existing.add(record.record_id)
        rows.append(_row(record, batch_id, created_at))

    if not rows:
        return 0

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_header = not path.exists() or path.stat().st_size == 0
        with path.open("a", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=CSV_COLUMNS)
            if write_header:
                writer.writeheader()
            writer.writerows(rows)
    except OSError as exc:
        raise StorageError(f"Cannot write {path}: {exc}") from exc

    LOGGER.info("Wrote %s CSV rows for batch_id=%s to %s", len(rows), batch_id, path)
    return len(rows)


def _row(record: ParsedRecord, batch_id: str, created_at: str) -> dict[str, Any]:
    data = record.to_dict()
    row = {column: _as_text(data.get(column)) for column in CSV_COLUMNS if column in data}
    row.update({
        "batch_id": batch_id,
        "authors": LIST_SEPARATOR.join(record.authors),
        "awards": LIST_SEPARATOR.join(record.awards),
        "errors": LIST_SEPARATOR.join(record.errors),
        "valid": record.valid,
        "created_at": created_at,
    })
    return row


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value)
