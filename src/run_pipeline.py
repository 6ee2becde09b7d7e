"""Pipeline CLI Entry Point

Provides the command-line interface for the vendor catalog ingestion
pipeline. Handles argument parsing, logging configuration and maps the run
outcome to an exit code.

Usage:
    python -m src.run_pipeline --collections nozzles,hotends --output-dir output
    python -m src.run_pipeline --all --dry-run
    python -m src.run_pipeline --restore-snapshot output/index_snapshot_20250101_120000.json

Exit codes: 0 run completed (per-item failures are in the summary),
1 run aborted, 2 missing configuration.
"""

# run_pipeline.py
import argparse
import logging
import time
from pathlib import Path

from pydantic import ValidationError

from src.catalog_pipeline.batch_store import JsonBatchStore
from src.catalog_pipeline.config import PipelineConfig
from src.catalog_pipeline.errors import FatalConfigError, PipelineError, RunLockedError
from src.catalog_pipeline.index_client import SearchIndexClient
from src.catalog_pipeline.indexer import IndexSynchronizer, restore_snapshot
from src.catalog_pipeline.models import SourceSpec
from src.catalog_pipeline.pipeline import cleanup_old_runs, run_pipeline

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CONFIG = 2


def configure_logging() -> None:
    """Configure logging with both console and file output.

    Sets up:
      - Root logger at DEBUG level
      - Console handler at INFO level for user-facing messages
      - File handler at DEBUG level for detailed troubleshooting
      - Reduced verbosity for httpx and openai loggers
    """
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / "pipeline.log"

    # Root logger
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    # Console handler: high-level INFO+
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    # File handler: detailed DEBUG+
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    # Clear existing handlers to avoid duplicates if run multiple times
    logger.handlers.clear()
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Vendor catalog ingestion pipeline"
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--collections",
        type=str,
        default=None,
        help="Comma-separated vendor collection handles to extract.",
    )
    source.add_argument(
        "--all",
        action="store_true",
        help="Extract the full product listing (default).",
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help="Page-count ceiling per source (overrides MAX_PAGES).",
    )
    parser.add_argument(
        "--deadline-seconds",
        type=float,
        default=None,
        help="Global run deadline, checked between requests.",
    )
    parser.add_argument(
        "--batch-dir",
        type=Path,
        default=Path("data/batches"),
        help="Directory holding the batch history.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Directory where output files will be written.",
    )
    parser.add_argument(
        "--taxonomy",
        type=Path,
        default=None,
        help="Taxonomy JSON file (defaults to the built-in taxonomy).",
    )
    parser.add_argument(
        "--reingest",
        nargs="+",
        default=[],
        metavar="VENDOR_ID",
        help="Vendor ids to ingest again even though they are in the history.",
    )
    parser.add_argument(
        "--skip-enrichment",
        action="store_true",
        help="Don't reconcile description records with the content service",
    )
    parser.add_argument(
        "--skip-index",
        action="store_true",
        help="Build index documents but don't sync the search index",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run every stage without persisting a batch or writing anywhere",
    )
    parser.add_argument(
        "--no-history",
        action="store_true",
        help="Overwrite output files instead of creating timestamped versions",
    )
    parser.add_argument(
        "--keep-last",
        type=int,
        default=None,
        help="After the run, keep only the last N runs' output files",
    )
    parser.add_argument(
        "--restore-snapshot",
        type=Path,
        default=None,
        metavar="PATH",
        help="Re-apply an index snapshot (compensating action) and exit",
    )
    return parser


def main(argv=None) -> int:
    """
    CLI entrypoint for the catalog ingestion pipeline.

    Parses command-line arguments, runs the pipeline end-to-end,
    and returns a Unix-style exit code.
    """
    configure_logging()
    logger = logging.getLogger(__name__)

    args = build_parser().parse_args(argv)

    overrides = {}
    if args.max_pages is not None:
        overrides["max_pages"] = args.max_pages
    if args.deadline_seconds is not None:
        overrides["run_deadline_seconds"] = args.deadline_seconds
    if args.taxonomy is not None:
        overrides["taxonomy_path"] = args.taxonomy

    try:
        config = PipelineConfig(**overrides)
    except ValidationError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    if args.restore_snapshot is not None:
        return _restore(config, args.restore_snapshot)

    collections = [c.strip() for c in (args.collections or "").split(",") if c.strip()]
    source = SourceSpec(collections=collections)

    logger.info("=== Starting catalog ingestion pipeline ===")
    logger.info("Source: %s", source.describe())
    logger.info("Batch directory: %s", args.batch_dir)
    logger.info("Output directory: %s", args.output_dir)
    logger.info("Dry_run: %s", args.dry_run)
    logger.info("Skip enrichment: %s", args.skip_enrichment)
    logger.info("Skip index: %s", args.skip_index)
    logger.info("Keep history: %s", not args.no_history)

    if args.dry_run:
        logger.info("DRY RUN MODE: no batch is persisted and nothing is written remotely")

    try:
        start_time = time.time()

        summary = run_pipeline(
            config,
            source=source,
            batch_store=JsonBatchStore(args.batch_dir),
            output_dir=args.output_dir,
            lock_dir=args.batch_dir,
            reingest_ids=args.reingest,
            skip_enrichment=args.skip_enrichment,
            skip_index=args.skip_index,
            dry_run=args.dry_run,
            keep_history=not args.no_history,
        )

        elapsed_time = time.time() - start_time

        logger.info("=" * 70)
        logger.info("Pipeline completed in %.2fs", elapsed_time)
        logger.info("  Retained:   %d new vendor products", summary.retained)
        logger.info("  Canonical:  %d products", summary.canonical)
        logger.info("  Documents:  %d", summary.documents)
        logger.info("  Errors:     %d", len(summary.errors))
        logger.info("=" * 70)

        if args.keep_last is not None and not args.no_history and not args.dry_run:
            cleanup_old_runs(args.output_dir, keep_last_n=args.keep_last)

    except FatalConfigError as e:
        logger.error("%s", e)
        return EXIT_CONFIG
    except RunLockedError as e:
        logger.error("Run aborted: %s", e)
        return EXIT_ABORTED
    except Exception as e:
        logger.exception(f"Pipeline failed with an unhandled exception: {e}")
        return EXIT_ABORTED

    return EXIT_OK


def _restore(config: PipelineConfig, path: Path) -> int:
    logger = logging.getLogger(__name__)
    if not config.search_url:
        logger.error("%s", FatalConfigError(["SEARCH_URL"]))
        return EXIT_CONFIG

    client = SearchIndexClient(config)
    try:
        restored = restore_snapshot(IndexSynchronizer(client, batch_size=config.index_batch_size), path)
    except (OSError, ValueError, PipelineError) as e:
        logger.error("Snapshot restore failed: %s", e)
        return EXIT_ABORTED
    finally:
        client.close()

    logger.info("✓ Restored %d documents from %s", restored, path)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
