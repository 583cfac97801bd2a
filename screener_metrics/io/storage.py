from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from screener_metrics.domain.schemas import RunSummary


logger = logging.getLogger(__name__)


def save_run_summary(results_dir: Path, summary: RunSummary) -> Path:
    """Serialize a RunSummary to JSON in the run results directory.

    Args:
        results_dir (Path): Run-specific results directory.
        summary (RunSummary): Summary to serialize.

    Returns:
        Path: Path to the saved JSON summary.
    """
    results_dir.mkdir(parents=True, exist_ok=True)
    path = summary_path(results_dir, summary.index_name)
    # Use pydantic to produce JSON-friendly data.
    payload = summary.model_dump(mode="json")
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    logger.debug("Saved run summary to %s", path)
    return path


def load_run_summary(results_dir: Path, index_name: str) -> Optional[RunSummary]:
    """Load a RunSummary from JSON, returning None when missing."""
    path = summary_path(results_dir, index_name)
    if not path.exists():
        logger.debug("No run summary found for %s in %s", index_name, results_dir)
        return None
    payload = json.loads(path.read_text(encoding="utf-8"))
    return RunSummary.model_validate(payload)


def summary_path(results_dir: Path, index_name: str) -> Path:
    """Build the summary path for an index, normalized to lowercase."""
    return results_dir / f"{index_name.strip().lower()}.summary.json"
