from __future__ import annotations

import argparse
import logging
import sys
from collections import Counter
from pathlib import Path

from sqlalchemy import Engine

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from screener_metrics.config import DB_URL_ENV, get_database_url
from screener_metrics.io.database import INDEX_TABLES, count_metric_coverage, get_engine, load_run_log


logger = logging.getLogger(__name__)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report non-NULL coverage of derived metric columns.")
    parser.add_argument("--index", default="sp500", choices=sorted(INDEX_TABLES))
    return parser.parse_args(argv)


def coverage_lines(engine: Engine, index_name: str) -> list[str]:
    """Format per-column coverage and the latest run's outcome counts."""
    total, counts = count_metric_coverage(engine, index_name)
    lines = [f"{index_name}: {total} symbols"]
    for column, count in counts.items():
        share = (count / total * 100.0) if total else 0.0
        lines.append(f"  {column:<24} {count:>6}/{total:<6} {share:6.1f}%")
    log_rows = load_run_log(engine, index_name)
    if log_rows:
        latest_run = max(str(row["run_at"]) for row in log_rows)
        statuses = Counter(str(row["status"]) for row in log_rows if str(row["run_at"]) == latest_run)
        not_converged = sum(
            1 for row in log_rows if str(row["run_at"]) == latest_run and row["solver_converged"] == 0
        )
        lines.append(
            f"Latest run {latest_run}: "
            + ", ".join(f"{status}={count}" for status, count in sorted(statuses.items()))
            + f", not_converged={not_converged}"
        )
    return lines


def main() -> None:
    args = _parse_args(sys.argv[1:])
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    database_url = get_database_url()
    if not database_url:
        logger.error("%s is required but not set", DB_URL_ENV)
        sys.exit(1)
    for line in coverage_lines(get_engine(database_url), args.index):
        print(line)


if __name__ == "__main__":
    main()
