from __future__ import annotations

"""Compose analyzer outputs into metric groups and persisted columns."""

import logging
from datetime import date
from math import isfinite
from typing import Mapping

from toolz import merge, valmap

from screener_metrics.domain.schemas import (
    CashFlowHistory,
    MarketValue,
    PerformanceMetrics,
    PriceSeries,
    ValuationAssumptions,
    ValuationResult,
)
from screener_metrics.logic.timeseries import (
    annualized_return,
    ar_mdd_ratio,
    has_history_since,
    max_drawdown,
    window_points,
    years_before,
)
from screener_metrics.logic.valuation import (
    SOLVER_LOWER_BOUND,
    SOLVER_MAX_ITERATIONS,
    SOLVER_RELATIVE_TOLERANCE,
    SOLVER_UPPER_BOUND,
    clamp_growth,
    estimate_growth_rate,
    margin_of_safety,
    project_enterprise_value,
    solve_implied_growth,
)

logger = logging.getLogger(__name__)

HORIZONS = (3, 5, 10)
DEFAULT_MAX_STALENESS_DAYS = 14
DEFAULT_SOLVER_SETTINGS = (
    SOLVER_LOWER_BOUND,
    SOLVER_UPPER_BOUND,
    SOLVER_MAX_ITERATIONS,
    SOLVER_RELATIVE_TOLERANCE,
)

# Column name -> (model attribute, decimals).
PERFORMANCE_COLUMNS: dict[str, tuple[str, int]] = {
    **{f"return_{years}_year": (f"return_{years}y", 2) for years in HORIZONS},
    **{f"max_drawdown_{years}_year": (f"max_drawdown_{years}y", 2) for years in HORIZONS},
    **{f"ar_mdd_ratio_{years}_year": (f"ar_mdd_ratio_{years}y", 4) for years in HORIZONS},
}
VALUATION_COLUMNS: dict[str, tuple[str, int]] = {
    "dcf_enterprise_value": ("enterprise_value", 0),
    "margin_of_safety": ("margin_of_safety", 4),
    "dcf_implied_growth": ("implied_growth_rate", 4),
    "fcf_growth_rate": ("growth_rate", 4),
    "latest_fcf": ("latest_fcf", 0),
}
METRIC_COLUMNS = (*PERFORMANCE_COLUMNS, *VALUATION_COLUMNS)


def compute_performance_metrics(
    series: PriceSeries,
    as_of: date,
    min_drawdown_points: int = 30,
    min_return_points: int = 100,
    max_staleness_days: int = DEFAULT_MAX_STALENESS_DAYS,
) -> PerformanceMetrics | None:
    """Compute returns, drawdowns and AR/MDD ratios for every horizon.

    Returns need at least ``min_return_points`` prices. A horizon is reported
    unavailable for both its return and its drawdown when its look-back date
    predates the series, when fewer than two prices fall inside its window, or
    when the latest price is more than ``max_staleness_days`` before ``as_of``.

    Args:
        series (PriceSeries): Normalized ascending price series.
        as_of (date): Reference date of the run.
        min_drawdown_points (int): Minimum points for the group to be determined.
        min_return_points (int): Minimum points for any return to be computed.
        max_staleness_days (int): Largest allowed gap between the latest price and as_of.

    Returns:
        PerformanceMetrics | None: Metrics, or None when the series is too short.
    """
    if len(series) < min_drawdown_points:
        return None
    stale = (as_of - series.points[-1].date).days > max_staleness_days
    if stale:
        logger.debug("Latest price %s is stale for %s", series.points[-1].date, as_of)
    values: dict[str, float | None] = {}
    for years in HORIZONS:
        covered = (
            not stale
            and has_history_since(series, years_before(as_of, years))
            and len(window_points(series, years, as_of)) >= 2
        )
        annualized = (
            annualized_return(series, years, as_of)
            if covered and len(series) >= min_return_points
            else None
        )
        drawdown = max_drawdown(series, years, as_of) if covered else None
        values[f"return_{years}y"] = annualized
        values[f"max_drawdown_{years}y"] = drawdown
        values[f"ar_mdd_ratio_{years}y"] = ar_mdd_ratio(annualized, drawdown)
    return PerformanceMetrics(**values)


def compute_valuation(
    history: CashFlowHistory,
    market: MarketValue,
    assumptions: ValuationAssumptions,
    default_growth_rate: float = 0.04,
    solver_settings: tuple[float, float, int, float] = DEFAULT_SOLVER_SETTINGS,
) -> ValuationResult | None:
    """Run the forward DCF, margin of safety and reverse DCF for one symbol.

    Args:
        history (CashFlowHistory): Cash flow history, latest first.
        market (MarketValue): Current price and market capitalization.
        assumptions (ValuationAssumptions): DCF assumptions for the run.
        default_growth_rate (float): Growth used when history yields no usable change.
        solver_settings (tuple[float, float, int, float]): Bracket, iterations, tolerance.

    Returns:
        ValuationResult | None: Valuation, or None when the inputs cannot support one.
    """
    latest = history.latest
    market_cap = market.market_capitalization
    if latest is None or not _positive(latest.free_cash_flow):
        return None
    if market_cap is None or not _positive(market_cap):
        return None
    estimated = estimate_growth_rate(history)
    growth = clamp_growth(default_growth_rate if estimated is None else estimated, assumptions)
    enterprise_value = project_enterprise_value(latest.free_cash_flow, growth, assumptions)
    lower, upper, iterations, tolerance = solver_settings
    solved = solve_implied_growth(
        market_cap,
        latest.free_cash_flow,
        assumptions,
        lower_bound=lower,
        upper_bound=upper,
        max_iterations=iterations,
        relative_tolerance=tolerance,
    )
    return ValuationResult(
        enterprise_value=enterprise_value,
        margin_of_safety=margin_of_safety(enterprise_value, market_cap),
        implied_growth_rate=solved.growth_rate if solved else None,
        growth_rate=growth,
        latest_fcf=latest.free_cash_flow,
        solver_converged=solved.converged if solved else None,
    )


def to_metric_columns(
    performance: PerformanceMetrics | None,
    valuation: ValuationResult | None,
) -> dict[str, float | None]:
    """Flatten determined metric groups into rounded persisted columns.

    An undetermined group (None) contributes no columns. A determined group
    contributes every column, with None for unavailable or non-finite values.

    Args:
        performance (PerformanceMetrics | None): Performance group, if determined.
        valuation (ValuationResult | None): Valuation group, if determined.

    Returns:
        dict[str, float | None]: Column name to persisted value.
    """
    return merge(
        _group_columns(performance, PERFORMANCE_COLUMNS) if performance is not None else {},
        _group_columns(valuation, VALUATION_COLUMNS) if valuation is not None else {},
    )


def _group_columns(
    model: PerformanceMetrics | ValuationResult,
    columns: Mapping[str, tuple[str, int]],
) -> dict[str, float | None]:
    return valmap(lambda field: _rounded(getattr(model, field[0]), field[1]), dict(columns))


def _rounded(value: float | None, decimals: int) -> float | None:
    if value is None or not isfinite(value):
        return None
    rounded = round(value, decimals)
    # Avoid persisting negative zero.
    return rounded + 0.0


def _positive(value: float) -> bool:
    return isfinite(value) and value > 0
