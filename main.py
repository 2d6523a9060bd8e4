"""CLI entrypoint for the citation parsing pipeline."""

from __future__ import annotations

import argparse
import logging
import os
from functools import partial

from dotenv import load_dotenv

import llm_client
from batch_io import BatchInputError, discover_batches
from crossref_client import CrossrefResolver
from fallback_resolver import resolve_by_inference
from pipeline import CitationPipeline
from report import format_run_summary, generate_review_report
from storage import JsonCacheRepository, JsonProgressRepository, StorageError


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags. Defaults come from the environment."""
    parser = argparse.ArgumentParser(description="Parse scraped citation batches into structured records")
    parser.add_argument("--batches-dir", default=os.getenv("BATCHES_DIR", "scraped/batches"))
    parser.add_argument("--output-dir", default=os.getenv("OUTPUT_DIR", "scraped/parsed"))
    parser.add_argument(
        "--cache-file",
        default=os.getenv("CACHE_FILE"),
        help="Crossref cache JSON (default: <output-dir>/crossref-cache.json)",
    )
    parser.add_argument(
        "--progress-file",
        default=os.getenv("PROGRESS_FILE"),
        help="Progress JSON (default: <output-dir>/progress.json)",
    )
    parser.add_argument("--csv", default=os.getenv("RECORDS_CSV_PATH", "parsed_records.csv"), help="Flat CSV export path")
    parser.add_argument(
        "--backend",
        choices=sorted(llm_client.BACKENDS),
        default=None,
        help="Inference backend for the fallback resolver (default: INFERENCE_BACKEND or ollama)",
    )
    parser.add_argument("--clear-cache", action="store_true", help="Empty the Crossref cache before running")
    parser.add_argument("--reset-progress", action="store_true", help="Forget completed batches and start over")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list the batches that would be processed, without network calls or writes",
    )
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> int:
    """Run one pipeline pass and return the process exit code."""
    cache_file = args.cache_file or os.path.join(args.output_dir, "crossref-cache.json")
    progress_file = args.progress_file or os.path.join(args.output_dir, "progress.json")

    try:
        batch_paths = discover_batches(args.batches_dir)
        progress = JsonProgressRepository(progress_file)

        if args.dry_run:
            pending = [p for p in batch_paths if not progress.is_completed(p.stem)]
            for path in pending:
                logging.info("[dry-run] Would process: %s", path.name)
            logging.info(
                "[dry-run] %s batches found, %s pending, %s already completed",
                len(batch_paths),
                len(pending),
                len(batch_paths) - len(pending),
            )
            return 0

        cache = JsonCacheRepository(cache_file)
        if args.clear_cache:
            logging.info("Clearing Crossref cache at %s", cache_file)
            cache.clear()
        if args.reset_progress:
            logging.info("Resetting progress at %s", progress_file)
            progress.reset()

        pipeline = CitationPipeline(
            cache=cache,
            progress=progress,
            output_dir=args.output_dir,
            resolver=CrossrefResolver(cache),
            fallback=partial(resolve_by_inference, generate=partial(llm_client.generate, backend=args.backend)),
            csv_path=args.csv,
        )
        summary = pipeline.run(batch_paths)
    except (BatchInputError, StorageError) as exc:
        logging.error("Aborting run: %s", exc)
        return 1

    for line in format_run_summary(summary):
        logging.info(line)

    try:
        generate_review_report(source_csv=args.csv)
    except OSError as exc:
        logging.warning("Review report generation failed (non-fatal): %s", exc)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Initialize config and execute the pipeline."""
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
