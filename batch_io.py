"""Scraper batch files in, parsed batch files out."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from models import Batch, Category, Citation, ParsedRecord
from storage import write_json_atomic

LOGGER = logging.getLogger(__name__)

BATCH_FILE_PATTERN = re.compile(r"^batch-\d+\.json$")


class BatchInputError(RuntimeError):
    """A batch file is missing, unreadable, or not shaped like a batch."""


def discover_batches(batches_dir: str | Path) -> list[Path]:
    """Return batch-NNN.json files in name order. Other files (manifest.json) are ignored."""
    directory = Path(batches_dir)
    if not directory.is_dir():
        raise BatchInputError(f"Batches directory not found: {directory}")
    return sorted(p for p in directory.iterdir() if p.is_file() and BATCH_FILE_PATTERN.match(p.name))


def load_batch(path: str | Path) -> Batch:
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise BatchInputError(f"Batch file not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise BatchInputError(f"Cannot read batch file {path}: {exc}") from exc

    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise BatchInputError(f"Batch file {path} has no 'items' list")

    category = Category.from_label(str(data.get("category") or ""))
    citations = tuple(
        Citation(raw_text=_item_text(item, path, index), category=category, index=index)
        for index, item in enumerate(data["items"])
    )
    return Batch(
        batch_id=path.stem,
        category=category,
        citations=citations,
        title=data.get("categoryTitle") or None,
    )


def _item_text(item: Any, path: Path, index: int) -> str:
    if isinstance(item, dict):
        item = item.get("raw")
    if not isinstance(item, str) or not item.strip():
        raise BatchInputError(f"Item {index} in {path} has no citation text")
    return item.strip()


def write_batch_output(batch: Batch, records: Iterable[ParsedRecord], output_dir: str | Path) -> Path:
    """Write <batch_id>-parsed.json and return its path."""
    output_path = Path(output_dir) / f"{batch.batch_id}-parsed.json"
    payload = {
        "batch_id": batch.batch_id,
        "category": str(batch.category),
        "category_title": batch.title,
        "parsed_at": datetime.now(UTC).isoformat(),
        "items": [record.to_dict() for record in records],
    }
    write_json_atomic(output_path, payload)
    LOGGER.info("Wrote %s records to %s", len(payload["items"]), output_path)
    return output_path
