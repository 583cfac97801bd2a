from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Iterable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from screener_metrics.config import DB_URL_ENV, get_database_url
from screener_metrics.domain.schemas import RunSummary
from screener_metrics.errors import ConfigurationError
from screener_metrics.io.database import INDEX_TABLES, SqlMetricsGateway, ensure_schema, get_engine, table_for_index
from screener_metrics.io.provider import FmpDataProvider
from screener_metrics.io.reporting import export_run_report
from screener_metrics.io.storage import save_run_summary
from screener_metrics.pipeline import run_metrics_pipeline


logger = logging.getLogger(__name__)


def _normalize_indexes(indexes: Iterable[str]) -> list[str]:
    """Normalize index inputs, defaulting to every known index.

    Raises:
        ConfigurationError: When an index name is unknown.
    """
    names = [name for name in (name.strip().lower() for name in indexes) if name]
    if not names:
        return list(INDEX_TABLES)
    for name in names:
        table_for_index(name)
    return list(dict.fromkeys(names))


def _parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse CLI arguments for a metrics run."""
    parser = argparse.ArgumentParser(description="Screener metrics batch runner")
    parser.add_argument(
        "indexes",
        nargs="*",
        help=f"Indexes to process ({', '.join(INDEX_TABLES)}); defaults to all",
    )
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Reference date (YYYY-MM-DD)")
    parser.add_argument(
        "--only-missing",
        action="store_true",
        default=None,
        help="Only process symbols with at least one missing metric",
    )
    parser.add_argument("--workers", type=int, default=None, help="Concurrent symbols (overrides config)")
    return parser.parse_args(argv)


def _init_engine(index_names: list[str]) -> Engine:
    """Create the database engine and make sure the metric schema exists.

    Raises:
        ConfigurationError: When the database URL is missing or the schema cannot be prepared.
    """
    database_url = get_database_url()
    if not database_url:
        raise ConfigurationError(f"{DB_URL_ENV} is required but not set")
    try:
        engine = get_engine(database_url)
    except (SQLAlchemyError, ImportError) as exc:
        raise ConfigurationError(f"Cannot create database engine from {DB_URL_ENV}: {exc}") from exc
    logger.info("Using database connection from %s", DB_URL_ENV)
    try:
        ensure_schema(engine, index_names)
    except SQLAlchemyError as exc:
        raise ConfigurationError(f"Database schema preflight failed: {exc}") from exc
    logger.info("Schema preflight complete")
    return engine


def run(argv: list[str], results_dir: Path) -> int:
    """Run the metrics pipeline for the requested indexes and write artifacts.

    Args:
        argv (list[str]): Command-line arguments without the program name.
        results_dir (Path): Run output directory.

    Returns:
        int: Process exit code.
    """
    args = _parse_args(argv)
    cancel_event = threading.Event()
    try:
        index_names = _normalize_indexes(args.indexes)
        provider = FmpDataProvider()
        engine = _init_engine(index_names)
    except ConfigurationError as exc:
        logger.error("Configuration error; aborting run: %s", exc)
        return 2

    def _request_cancel(signum: int, frame: object) -> None:
        logger.warning("Cancellation requested; finishing in-flight symbols")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _request_cancel)
    try:
        run_metrics_pipeline(
            index_names,
            provider,
            SqlMetricsGateway(engine),
            as_of=args.as_of,
            cancel_event=cancel_event,
            max_workers=args.workers,
            only_missing=args.only_missing,
            on_summary=lambda summary: _write_artifacts(results_dir, summary),
        )
    except ConfigurationError as exc:
        logger.error("Configuration error; aborting run: %s", exc)
        return 2
    except SQLAlchemyError as exc:
        logger.error("Database error; aborting remaining indexes: %s", exc)
        return 3
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    return 1 if cancel_event.is_set() else 0


def _write_artifacts(results_dir: Path, summary: RunSummary) -> None:
    summary_path = save_run_summary(results_dir, summary)
    report_path = results_dir / f"{summary.index_name}.xlsx"
    export_run_report(summary, report_path)
    logger.info(
        "%s: updated=%d skipped=%d errors=%d%s (summary %s, report %s)",
        summary.index_name,
        summary.updated,
        summary.skipped,
        summary.errors,
        " [cancelled]" if summary.cancelled else "",
        summary_path,
        report_path,
    )


def _ensure_results_root() -> tuple[Path, bool]:
    """Ensure the root results directory exists.

    Args:
        None

    Returns:
        tuple[Path, bool]: Results path and whether it was created.
    """
    results_root = Path(__file__).resolve().parent / "results"
    created = not results_root.exists()
    results_root.mkdir(parents=True, exist_ok=True)
    return results_root, created


def _build_results_dir(results_root: Path) -> Path:
    """Create a timestamped results directory for the current run.

    Args:
        results_root (Path): Base directory for run outputs.

    Returns:
        Path: Directory path for this run's outputs.
    """
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    run_dir = results_root / timestamp
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def _configure_logging(log_path: Path) -> None:
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    logging.basicConfig(level=logging.DEBUG, handlers=[console_handler, file_handler])
    # Keep HTTP connection chatter out of the run log.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


if __name__ == "__main__":
    results_root, results_created = _ensure_results_root()
    results_dir = _build_results_dir(results_root)
    _configure_logging(results_dir / "run.log")
    if results_created:
        logger.info("Created results directory: %s", results_root)
    else:
        logger.info("Using existing results directory: %s", results_root)
    logger.info("Run output directory: %s", results_dir)
    sys.exit(run(sys.argv[1:], results_dir))
