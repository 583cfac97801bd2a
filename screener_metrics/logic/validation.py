from __future__ import annotations

"""Normalization and validation of engine inputs."""

import logging
from math import isfinite
from operator import attrgetter
from typing import Iterable

from screener_metrics.domain.schemas import (
    CashFlowHistory,
    CashFlowRecord,
    PricePoint,
    PriceSeries,
    ValuationAssumptions,
)

logger = logging.getLogger(__name__)


def normalize_price_series(points: Iterable[PricePoint]) -> tuple[PriceSeries, list[str]]:
    """Build an ascending, de-duplicated price series from provider points.

    Points whose effective price is non-finite or non-positive are dropped.
    Duplicate dates keep the last occurrence.

    Args:
        points (Iterable[PricePoint]): Provider points in any order.

    Returns:
        tuple[PriceSeries, list[str]]: Normalized series and human-readable warnings.
    """
    warnings: list[str] = []
    by_date: dict = {}
    for point in points:
        if not _positive(point.price):
            warnings.append(f"Dropped {point.date.isoformat()}: unusable price {point.price!r}")
            continue
        by_date[point.date] = point
    series = PriceSeries(points=tuple(sorted(by_date.values(), key=attrgetter("date"))))
    if warnings:
        logger.debug("Price normalization dropped %d points", len(warnings))
    return series, warnings


def normalize_cash_flow_history(
    records: Iterable[CashFlowRecord],
) -> tuple[CashFlowHistory, list[str]]:
    """Order cash flow records latest-first, dropping non-finite values.

    Negative and zero cash flows are kept; whether they are usable is a
    valuation decision.

    Args:
        records (Iterable[CashFlowRecord]): Provider records in any order.

    Returns:
        tuple[CashFlowHistory, list[str]]: Normalized history and warnings.
    """
    warnings: list[str] = []
    by_year: dict[int, CashFlowRecord] = {}
    for record in records:
        if not isfinite(record.free_cash_flow):
            warnings.append(f"Dropped fiscal year {record.fiscal_year}: non-finite free cash flow")
            continue
        by_year[record.fiscal_year] = record
    ordered = sorted(by_year.values(), key=attrgetter("fiscal_year"), reverse=True)
    return CashFlowHistory(records=tuple(ordered)), warnings


def validate_assumptions(assumptions: ValuationAssumptions) -> list[str]:
    """Validate cross-field DCF assumptions.

    Args:
        assumptions (ValuationAssumptions): Assumptions loaded from configuration.

    Returns:
        list[str]: Problems found; empty when the assumptions are usable.
    """
    problems = [
        *([] if isfinite(assumptions.discount_rate) else ["discount_rate must be finite"]),
        *([] if isfinite(assumptions.terminal_growth_rate) else ["terminal_growth_rate must be finite"]),
    ]
    if assumptions.discount_rate <= assumptions.terminal_growth_rate:
        problems.append(
            "discount_rate must exceed terminal_growth_rate "
            f"({assumptions.discount_rate} <= {assumptions.terminal_growth_rate})"
        )
    if assumptions.growth_clamp_min > assumptions.growth_clamp_max:
        problems.append(
            "growth_clamp_min must not exceed growth_clamp_max "
            f"({assumptions.growth_clamp_min} > {assumptions.growth_clamp_max})"
        )
    return problems


def validate_solver_settings(
    lower_bound: float,
    upper_bound: float,
    max_iterations: int,
    relative_tolerance: float,
) -> list[str]:
    """Validate the implied growth solver bracket and budget."""
    problems: list[str] = []
    if not lower_bound < upper_bound:
        problems.append(f"solver lower_bound must be below upper_bound ({lower_bound} >= {upper_bound})")
    if lower_bound <= -1.0:
        problems.append(f"solver lower_bound must exceed -1 ({lower_bound})")
    if max_iterations <= 0:
        problems.append(f"solver max_iterations must be positive ({max_iterations})")
    if not relative_tolerance > 0:
        problems.append(f"solver relative_tolerance must be positive ({relative_tolerance})")
    return problems


def _positive(value: float | None) -> bool:
    return value is not None and isfinite(value) and value > 0
