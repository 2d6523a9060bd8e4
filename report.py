"""End-of-run reporting.

format_run_summary() renders what a run did (totals by strategy and validity,
one PASS/REVIEW line per processed batch). generate_review_report() pulls the
invalid rows out of the CSV export into a smaller file for manual review.

The review report is also runnable standalone:
    python report.py [records.csv]
"""

from __future__ import annotations

import csv
import logging
import os
from pathlib import Path

from models import RunSummary

LOGGER = logging.getLogger(__name__)

_DEFAULT_SOURCE_CSV = os.getenv("RECORDS_CSV_PATH", "parsed_records.csv")
REVIEW_REPORT_PATH = os.getenv("REVIEW_REPORT_PATH", "needs_review.csv")

REVIEW_COLUMNS = [
    "id",
    "batch_id",
    "category",
    "provenance",
    "errors",
    "title",
    "authors",
    "year",
    "doi",
    "raw_text",
]


def _percent(part: int, total: int) -> str:
    return f"{100 * part / total:.1f}%" if total else "0.0%"


def format_run_summary(summary: RunSummary) -> list[str]:
    """Human-readable summary lines for the log."""
    stats = summary.stats
    lines = [
        f"Total records: {stats.total}",
        f"  category parser:   {stats.category_parser} ({_percent(stats.category_parser, stats.total)})",
        f"  external resolver: {stats.external_resolver} ({_percent(stats.external_resolver, stats.total)})",
        f"  fallback resolver: {stats.fallback_resolver} ({_percent(stats.fallback_resolver, stats.total)})",
        f"Valid: {stats.valid}",
        f"Invalid (needs review): {stats.invalid}",
    ]
    if summary.skipped:
        lines.append(f"Skipped (already completed): {len(summary.skipped)} batches")
    for result in summary.processed:
        indicator = "PASS" if result.invalid_count == 0 else "REVIEW"
        lines.append(
            f"[{indicator}] {result.batch_id} ({result.category}): "
            f"{result.valid_count}/{len(result.records)} valid"
        )
    return lines


def _write_csv(path: str | Path, columns: list[str], rows: list[dict]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


def generate_review_report(source_csv: str | Path | None = None, review_path: str | Path | None = None) -> int:
    """Write the invalid rows of the export to the review file. Returns the row count."""
    source = Path(source_csv or _DEFAULT_SOURCE_CSV)
    target = review_path or REVIEW_REPORT_PATH

    if not source.exists() or source.stat().st_size == 0:
        LOGGER.warning("report: source CSV not found or empty: %s", source)
        return 0

    with source.open(newline="", encoding="utf-8") as fh:
        rows = [r for r in csv.DictReader(fh) if str(r.get("valid", "")).lower() != "true"]

    _write_csv(target, REVIEW_COLUMNS, rows)
    LOGGER.info("report: %d records need review -> %s", len(rows), target)
    return len(rows)


if __name__ == "__main__":
    import sys

    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    source = sys.argv[1] if len(sys.argv) > 1 else None
    count = generate_review_report(source)
    print(f"{count} records to review -> {REVIEW_REPORT_PATH}")
