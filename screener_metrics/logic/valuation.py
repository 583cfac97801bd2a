from __future__ import annotations

"""Forward and reverse discounted cash flow valuation."""

import logging
from math import isfinite
from statistics import median

from more_itertools import last, pairwise, take

from screener_metrics.domain.schemas import CashFlowHistory, SolverResult, ValuationAssumptions

logger = logging.getLogger(__name__)

SOLVER_LOWER_BOUND = -0.50
SOLVER_UPPER_BOUND = 1.00
SOLVER_MAX_ITERATIONS = 100
SOLVER_RELATIVE_TOLERANCE = 1e-4
MARGIN_OF_SAFETY_FLOOR = -1.0
GROWTH_LOOKBACK_RECORDS = 6


def project_enterprise_value(
    latest_fcf: float,
    growth_rate: float,
    assumptions: ValuationAssumptions,
) -> float | None:
    """Project free cash flow forward and discount it to an enterprise value.

    Each year t in 1..N grows the base by ``(1 + growth_rate) ** t`` and is
    discounted by ``(1 + discount_rate) ** t``. The year-N cash flow seeds a
    Gordon-growth terminal value discounted back N years.

    Args:
        latest_fcf (float): Most recent annual free cash flow.
        growth_rate (float): Annual growth assumption, already clamped by the caller.
        assumptions (ValuationAssumptions): Discount rate, terminal growth and horizon.

    Returns:
        float | None: Enterprise value, or None when the model is not computable.
    """
    if not _is_computable(latest_fcf, assumptions) or not isfinite(growth_rate):
        return None
    discount = 1.0 + assumptions.discount_rate
    growth = 1.0 + growth_rate
    years = range(1, assumptions.projection_years + 1)
    projected = [latest_fcf * growth**year for year in years]
    present_value = sum(fcf / discount**year for year, fcf in zip(years, projected))
    terminal_value = (
        last(projected)
        * (1.0 + assumptions.terminal_growth_rate)
        / (assumptions.discount_rate - assumptions.terminal_growth_rate)
    )
    enterprise_value = present_value + terminal_value / discount**assumptions.projection_years
    return enterprise_value if isfinite(enterprise_value) else None


def solve_implied_growth(
    target_value: float,
    latest_fcf: float,
    assumptions: ValuationAssumptions,
    lower_bound: float = SOLVER_LOWER_BOUND,
    upper_bound: float = SOLVER_UPPER_BOUND,
    max_iterations: int = SOLVER_MAX_ITERATIONS,
    relative_tolerance: float = SOLVER_RELATIVE_TOLERANCE,
) -> SolverResult | None:
    """Find the growth rate whose projected enterprise value matches a target.

    Bisection over a fixed bracket. Convergence means the projected value is
    within ``relative_tolerance * target_value`` of the target; otherwise the
    midpoint with the smallest miss is returned with ``converged=False``.

    Args:
        target_value (float): Market capitalization to reproduce.
        latest_fcf (float): Most recent annual free cash flow.
        assumptions (ValuationAssumptions): DCF assumptions.
        lower_bound (float): Lowest growth rate searched.
        upper_bound (float): Highest growth rate searched.
        max_iterations (int): Iteration budget.
        relative_tolerance (float): Tolerance as a fraction of the target.

    Returns:
        SolverResult | None: Growth estimate with convergence flag, or None when not computable.
    """
    if not isfinite(target_value) or target_value <= 0:
        return None
    if not _is_computable(latest_fcf, assumptions):
        return None
    if max_iterations <= 0 or lower_bound >= upper_bound:
        return None
    tolerance = relative_tolerance * target_value
    low, high = lower_bound, upper_bound
    best_rate = (low + high) / 2
    best_miss = float("inf")
    for iteration in range(1, max_iterations + 1):
        midpoint = (low + high) / 2
        value = project_enterprise_value(latest_fcf, midpoint, assumptions)
        if value is None:
            high = midpoint
            continue
        miss = abs(value - target_value)
        if miss < best_miss:
            best_rate, best_miss = midpoint, miss
        if miss <= tolerance:
            return SolverResult(growth_rate=midpoint, converged=True, iterations=iteration)
        if value > target_value:
            high = midpoint
        else:
            low = midpoint
    return SolverResult(growth_rate=best_rate, converged=False, iterations=max_iterations)


def margin_of_safety(enterprise_value: float | None, market_value: float | None) -> float | None:
    """Return ``1 - market / intrinsic`` floored at -1 (fraction, not percent)."""
    if enterprise_value is None or market_value is None:
        return None
    if not isfinite(enterprise_value) or not isfinite(market_value):
        return None
    if enterprise_value <= 0 or market_value <= 0:
        return None
    return max(1.0 - market_value / enterprise_value, MARGIN_OF_SAFETY_FLOOR)


def clamp_growth(growth_rate: float, assumptions: ValuationAssumptions) -> float:
    """Clamp a growth assumption into the configured range."""
    return min(max(growth_rate, assumptions.growth_clamp_min), assumptions.growth_clamp_max)


def estimate_growth_rate(history: CashFlowHistory) -> float | None:
    """Estimate FCF growth as the median year-over-year change of recent years.

    Only the latest ``GROWTH_LOOKBACK_RECORDS`` statements are used, and a
    change counts only when the earlier year's FCF is positive.

    Args:
        history (CashFlowHistory): Cash flow records, latest first.

    Returns:
        float | None: Median growth as a fraction, or None when no change is usable.
    """
    recent = take(GROWTH_LOOKBACK_RECORDS, history.records)
    changes = [
        (current.free_cash_flow - previous.free_cash_flow) / previous.free_cash_flow
        for previous, current in pairwise(reversed(recent))
        if _usable_cash_flow(previous.free_cash_flow) and isfinite(current.free_cash_flow)
    ]
    if not changes:
        return None
    growth = median(changes)
    logger.debug("Median FCF growth over %d changes: %.4f", len(changes), growth)
    return growth if isfinite(growth) else None


def _is_computable(latest_fcf: float, assumptions: ValuationAssumptions) -> bool:
    """Return True when the perpetuity-growth model is defined for these inputs."""
    if not _usable_cash_flow(latest_fcf):
        return False
    return assumptions.discount_rate > assumptions.terminal_growth_rate


def _usable_cash_flow(value: float) -> bool:
    return isfinite(value) and value > 0
