from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from screener_metrics.domain.schemas import RunSummary
from screener_metrics.logic.metrics import METRIC_COLUMNS


OUTCOME_COLUMNS = ("symbol", "status", "error_code", "http_status", "message", "solver_converged")
SUMMARY_ROWS = ("index_name", "as_of", "started_at", "finished_at", "updated", "skipped", "errors", "cancelled")

PERCENT_FORMAT = "0.00"
RATIO_FORMAT = "0.0000"
CURRENCY_FORMAT = "#,##0;[Red](#,##0)"


logger = logging.getLogger(__name__)


def export_run_report(summary: RunSummary, output_path: Path) -> None:
    """Write a run summary and per-symbol metrics to an Excel workbook.

    Args:
        summary (RunSummary): Completed run summary.
        output_path (Path): Destination path for the workbook.

    Returns:
        None: Writes an Excel file to disk.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Exporting %d outcomes to %s", len(summary.outcomes), output_path)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        _summary_frame(summary).to_excel(writer, sheet_name="Summary", index_label="Field")
        _outcome_frame(summary).to_excel(writer, sheet_name="Symbols", index=False)
        _format_workbook(writer)


def _summary_frame(summary: RunSummary) -> pd.DataFrame:
    payload = summary.model_dump(mode="json", exclude={"outcomes"})
    return pd.DataFrame({"Value": [payload[key] for key in SUMMARY_ROWS]}, index=list(SUMMARY_ROWS))


def _outcome_frame(summary: RunSummary) -> pd.DataFrame:
    """Build one row per symbol with its status and every metric column.

    Args:
        summary (RunSummary): Completed run summary.

    Returns:
        pd.DataFrame: Outcome rows; metric cells are blank when not written.
    """
    rows = [
        {
            **{column: getattr(outcome, column) for column in OUTCOME_COLUMNS},
            **{column: outcome.columns.get(column) for column in METRIC_COLUMNS},
        }
        for outcome in summary.outcomes
    ]
    return pd.DataFrame(rows, columns=[*OUTCOME_COLUMNS, *METRIC_COLUMNS])


def _format_workbook(writer: pd.ExcelWriter) -> None:
    """Apply number formats per metric unit and hide gridlines."""
    for sheet in writer.sheets.values():
        sheet.sheet_view.showGridLines = False
    sheet = writer.sheets["Symbols"]
    for offset, column in enumerate(METRIC_COLUMNS, start=len(OUTCOME_COLUMNS) + 1):
        number_format = _number_format(column)
        for row in sheet.iter_rows(min_row=2, min_col=offset, max_col=offset):
            for cell in row:
                cell.number_format = number_format


def _number_format(column: str) -> str:
    if column in {"dcf_enterprise_value", "latest_fcf"}:
        return CURRENCY_FORMAT
    if column.startswith(("return_", "max_drawdown_")):
        return PERCENT_FORMAT
    return RATIO_FORMAT
