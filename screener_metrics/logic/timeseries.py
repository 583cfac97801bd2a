from __future__ import annotations

"""Return and drawdown analytics over an ascending price series."""

from datetime import date, timedelta
from itertools import accumulate
from math import isfinite

from screener_metrics.domain.schemas import PricePoint, PriceSeries


def annualized_return(
    series: PriceSeries,
    horizon_years: float,
    as_of: date | None = None,
) -> float | None:
    """Compute the annualized return over a look-back horizon.

    The start price is the point nearest to ``as_of - horizon_years`` (first
    match wins on ties); the end price is the latest point in the series.

    Args:
        series (PriceSeries): Ascending price series.
        horizon_years (float): Look-back horizon in years.
        as_of (date | None): Reference date, defaults to the latest point date.

    Returns:
        float | None: Annualized return in percent, or None when unavailable.
    """
    if not series.points or horizon_years <= 0:
        return None
    reference = as_of or series.points[-1].date
    target = years_before(reference, horizon_years)
    # No fallback to the oldest point: the history must reach the target date.
    if not has_history_since(series, target):
        return None
    start_point = nearest_point(series, target)
    if start_point is None:
        return None
    start_price = start_point.price
    end_price = series.points[-1].price
    if not _usable_price(start_price) or not _usable_price(end_price):
        return None
    value = ((end_price / start_price) ** (1.0 / horizon_years) - 1.0) * 100.0
    return value if isfinite(value) else None


def max_drawdown(
    series: PriceSeries,
    window_years: float | None = None,
    as_of: date | None = None,
) -> float:
    """Compute the largest peak-to-trough decline in percent.

    Args:
        series (PriceSeries): Ascending price series.
        window_years (float | None): Trailing window to restrict to, or None for all points.
        as_of (date | None): Window end date, defaults to the latest point date.

    Returns:
        float: Non-negative maximum drawdown in percent; zero for fewer than two points.
    """
    points = window_points(series, window_years, as_of)
    if len(points) < 2:
        return 0.0
    prices = [point.price for point in points]
    peaks = accumulate(prices, max)
    worst = max(
        ((peak - price) / peak for peak, price in zip(peaks, prices) if peak > 0),
        default=0.0,
    )
    return max(worst, 0.0) * 100.0


def ar_mdd_ratio(annualized: float | None, drawdown: float | None) -> float | None:
    """Divide annualized return by max drawdown, guarding zero and non-finite inputs."""
    if annualized is None or drawdown is None:
        return None
    if not isfinite(annualized) or not isfinite(drawdown) or drawdown <= 0:
        return None
    ratio = annualized / drawdown
    return ratio if isfinite(ratio) else None


def window_points(
    series: PriceSeries,
    window_years: float | None,
    as_of: date | None = None,
) -> tuple[PricePoint, ...]:
    """Return the points inside a trailing window ending at as_of."""
    if window_years is None or not series.points:
        return series.points
    reference = as_of or series.points[-1].date
    start = years_before(reference, window_years)
    return tuple(point for point in series.points if start <= point.date <= reference)


def has_history_since(series: PriceSeries, target: date) -> bool:
    """Return True when the series has a point on or before the target date."""
    return bool(series.points) and series.points[0].date <= target


def nearest_point(series: PriceSeries, target: date) -> PricePoint | None:
    """Return the point closest to the target date, first match on ties."""
    if not series.points:
        return None
    return min(series.points, key=lambda point: abs((point.date - target).days))


def years_before(current: date, years: float) -> date:
    """Return the date a number of years before current.

    Whole months are applied calendar-wise (Feb 29 clamps to Feb 28); any
    fractional month remainder is applied in days.

    Args:
        current (date): Reference date.
        years (float): Number of years to subtract.

    Returns:
        date: The shifted date.
    """
    total_months = years * 12
    whole_months = int(total_months)
    shifted = _months_ago(current, whole_months)
    remainder_days = round((total_months - whole_months) * 365.25 / 12)
    return shifted - timedelta(days=remainder_days)


def _months_ago(current: date, months: int) -> date:
    """Return the date that is a number of calendar months before current."""
    year_offset, month_index = divmod(current.month - months - 1, 12)
    year = current.year + year_offset
    month = month_index + 1
    day = min(current.day, _month_end_day(year, month))
    return date(year, month, day)


def _month_end_day(year: int, month: int) -> int:
    """Return the last day of a given month."""
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - timedelta(days=1)).day


def _usable_price(value: float) -> bool:
    return isfinite(value) and value > 0
