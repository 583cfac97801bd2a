from __future__ import annotations

"""Tests for input normalization and configuration validation."""

from datetime import date

import pytest
from pydantic import ValidationError

from screener_metrics.domain.schemas import (
    CashFlowHistory,
    CashFlowRecord,
    PricePoint,
    PriceSeries,
    ValuationAssumptions,
)
from screener_metrics.logic.validation import (
    normalize_cash_flow_history,
    normalize_price_series,
    validate_assumptions,
    validate_solver_settings,
)


def test_normalize_price_series_sorts_dedupes_and_drops_bad_prices() -> None:
    points = [
        PricePoint(date=date(2024, 1, 3), close=12.0),
        PricePoint(date=date(2024, 1, 1), close=10.0),
        PricePoint(date=date(2024, 1, 2), close=0.0),
        PricePoint(date=date(2024, 1, 3), close=13.0, adjusted_close=12.5),
        PricePoint(date=date(2024, 1, 4), close=float("nan")),
        PricePoint(date=date(2024, 1, 5), close=-1.0, adjusted_close=14.0),
    ]

    series, warnings = normalize_price_series(points)

    assert [point.date for point in series.points] == [
        date(2024, 1, 1),
        date(2024, 1, 3),
        date(2024, 1, 5),
    ]
    # Later duplicate wins; adjusted close takes precedence over close.
    assert [point.price for point in series.points] == [10.0, 12.5, 14.0]
    assert len(warnings) == 2


def test_normalize_price_series_empty() -> None:
    series, warnings = normalize_price_series([])

    assert len(series) == 0
    assert warnings == []


def test_price_series_rejects_unordered_points() -> None:
    with pytest.raises(ValidationError):
        PriceSeries(
            points=(
                PricePoint(date=date(2024, 1, 2), close=1.0),
                PricePoint(date=date(2024, 1, 1), close=1.0),
            )
        )


def test_normalize_cash_flow_history_orders_latest_first() -> None:
    records = [
        CashFlowRecord(fiscal_year=2021, free_cash_flow=100.0),
        CashFlowRecord(fiscal_year=2023, free_cash_flow=-20.0),
        CashFlowRecord(fiscal_year=2022, free_cash_flow=float("inf")),
        CashFlowRecord(fiscal_year=2024, free_cash_flow=140.0),
    ]

    history, warnings = normalize_cash_flow_history(records)

    assert [record.fiscal_year for record in history.records] == [2024, 2023, 2021]
    assert history.latest == CashFlowRecord(fiscal_year=2024, free_cash_flow=140.0)
    assert len(warnings) == 1


def test_cash_flow_history_rejects_oldest_first() -> None:
    with pytest.raises(ValidationError):
        CashFlowHistory(
            records=(
                CashFlowRecord(fiscal_year=2020, free_cash_flow=1.0),
                CashFlowRecord(fiscal_year=2021, free_cash_flow=1.0),
            )
        )


def test_validate_assumptions_accepts_defaults(assumptions: ValuationAssumptions) -> None:
    assert validate_assumptions(assumptions) == []


def test_validate_assumptions_reports_each_problem(assumptions: ValuationAssumptions) -> None:
    broken = assumptions.model_copy(
        update={"terminal_growth_rate": 0.09, "growth_clamp_min": 0.2, "growth_clamp_max": 0.1}
    )

    problems = validate_assumptions(broken)

    assert len(problems) == 2
    assert any("discount_rate must exceed terminal_growth_rate" in problem for problem in problems)
    assert any("growth_clamp_min" in problem for problem in problems)


def test_valuation_assumptions_field_constraints() -> None:
    with pytest.raises(ValidationError):
        ValuationAssumptions(
            discount_rate=0.0,
            terminal_growth_rate=0.02,
            projection_years=10,
            growth_clamp_min=-0.05,
            growth_clamp_max=0.15,
        )
    with pytest.raises(ValidationError):
        ValuationAssumptions(
            discount_rate=0.08,
            terminal_growth_rate=0.02,
            projection_years=0,
            growth_clamp_min=-0.05,
            growth_clamp_max=0.15,
        )


def test_validate_solver_settings() -> None:
    assert validate_solver_settings(-0.5, 1.0, 100, 1e-4) == []
    assert len(validate_solver_settings(1.0, -0.5, 0, 0.0)) == 3
    assert validate_solver_settings(-1.0, 1.0, 100, 1e-4) == ["solver lower_bound must exceed -1 (-1.0)"]
