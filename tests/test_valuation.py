from __future__ import annotations

"""Tests for the forward DCF, reverse DCF and margin of safety."""

import pytest

from screener_metrics.domain.schemas import CashFlowHistory, CashFlowRecord, ValuationAssumptions
from screener_metrics.logic.valuation import (
    clamp_growth,
    estimate_growth_rate,
    margin_of_safety,
    project_enterprise_value,
    solve_implied_growth,
)


# Hand-computed: PV of ten grown years 817.3372647733 plus PV of terminal value 1165.5871730329.
REFERENCE_ENTERPRISE_VALUE = 1982.9244378061


def _history(*rows: tuple[int, float]) -> CashFlowHistory:
    return CashFlowHistory(
        records=tuple(CashFlowRecord(fiscal_year=year, free_cash_flow=value) for year, value in rows)
    )


def test_enterprise_value_matches_reference(assumptions: ValuationAssumptions) -> None:
    value = project_enterprise_value(100.0, 0.04, assumptions)

    assert value == pytest.approx(REFERENCE_ENTERPRISE_VALUE, rel=1e-9)


def test_enterprise_value_not_computable(assumptions: ValuationAssumptions) -> None:
    inverted = assumptions.model_copy(update={"terminal_growth_rate": 0.08})

    assert project_enterprise_value(0.0, 0.04, assumptions) is None
    assert project_enterprise_value(-50.0, 0.04, assumptions) is None
    assert project_enterprise_value(100.0, 0.04, inverted) is None
    assert project_enterprise_value(float("nan"), 0.04, assumptions) is None


def test_enterprise_value_increases_with_growth(assumptions: ValuationAssumptions) -> None:
    rates = [-0.05 + step * 0.01 for step in range(21)]
    values = [project_enterprise_value(250.0, rate, assumptions) for rate in rates]

    assert all(value is not None for value in values)
    assert all(later > earlier for earlier, later in zip(values, values[1:]))  # type: ignore[operator]


@pytest.mark.parametrize("growth", [-0.05, -0.013, 0.0, 0.04, 0.0975, 0.15])
def test_implied_growth_recovers_projection_input(
    assumptions: ValuationAssumptions,
    growth: float,
) -> None:
    target = project_enterprise_value(1_250.0, growth, assumptions)
    assert target is not None

    result = solve_implied_growth(target, 1_250.0, assumptions)

    assert result is not None
    assert result.converged
    assert result.growth_rate == pytest.approx(growth, abs=1e-4)
    recovered = project_enterprise_value(1_250.0, result.growth_rate, assumptions)
    assert recovered == pytest.approx(target, rel=1e-4)


def test_implied_growth_reports_non_convergence(assumptions: ValuationAssumptions) -> None:
    """A target beyond the bracket returns the best midpoint, flagged."""
    result = solve_implied_growth(1e15, 100.0, assumptions)

    assert result is not None
    assert not result.converged
    assert result.iterations == 100
    assert result.growth_rate > 0.99


def test_implied_growth_respects_iteration_budget(assumptions: ValuationAssumptions) -> None:
    target = project_enterprise_value(100.0, 0.0731, assumptions)
    assert target is not None

    result = solve_implied_growth(target, 100.0, assumptions, max_iterations=2)

    assert result is not None
    assert not result.converged
    assert result.iterations == 2


def test_implied_growth_not_computable(assumptions: ValuationAssumptions) -> None:
    assert solve_implied_growth(0.0, 100.0, assumptions) is None
    assert solve_implied_growth(-1.0, 100.0, assumptions) is None
    assert solve_implied_growth(1000.0, 0.0, assumptions) is None
    assert solve_implied_growth(1000.0, -10.0, assumptions) is None


def test_margin_of_safety_values_and_floor() -> None:
    assert margin_of_safety(200.0, 100.0) == pytest.approx(0.5)
    assert margin_of_safety(100.0, 100.0) == 0.0
    assert margin_of_safety(100.0, 150.0) == pytest.approx(-0.5)
    assert margin_of_safety(100.0, 1_000_000.0) == -1.0


@pytest.mark.parametrize(
    ("enterprise_value", "market_value"),
    [(1.0, 1e9), (1e9, 1.0), (3.0, 7.0), (7.0, 3.0), (1e12, 1e12)],
)
def test_margin_of_safety_stays_bounded(enterprise_value: float, market_value: float) -> None:
    value = margin_of_safety(enterprise_value, market_value)

    assert value is not None
    assert -1.0 <= value <= 1.0


def test_margin_of_safety_unavailable_inputs() -> None:
    assert margin_of_safety(None, 100.0) is None
    assert margin_of_safety(100.0, None) is None
    assert margin_of_safety(0.0, 100.0) is None
    assert margin_of_safety(-5.0, 100.0) is None
    assert margin_of_safety(100.0, 0.0) is None


def test_estimate_growth_rate_is_median_of_yearly_changes() -> None:
    history = _history((2024, 150.0), (2023, 100.0), (2022, 200.0), (2021, 100.0), (2020, 200.0), (2019, 100.0))

    assert estimate_growth_rate(history) == pytest.approx(0.5)


def test_estimate_growth_rate_averages_middle_pair_and_skips_non_positive_bases() -> None:
    history = _history((2024, 150.0), (2023, -10.0), (2022, 100.0), (2021, 80.0))

    # 2021->2022 is +25%, 2022->2023 is -110%, 2023->2024 has no positive base.
    assert estimate_growth_rate(history) == pytest.approx((0.25 - 1.1) / 2)


def test_estimate_growth_rate_uses_latest_six_statements() -> None:
    history = _history(
        (2024, 400.0),
        (2023, 400.0),
        (2022, 400.0),
        (2021, 400.0),
        (2020, 200.0),
        (2019, 100.0),
        (2018, 50.0),
    )

    assert estimate_growth_rate(history) == 0.0


def test_estimate_growth_rate_unavailable() -> None:
    assert estimate_growth_rate(_history()) is None
    assert estimate_growth_rate(_history((2024, 100.0))) is None
    assert estimate_growth_rate(_history((2024, 100.0), (2023, -1.0))) is None
    assert estimate_growth_rate(_history((2024, 100.0), (2023, 0.0), (2022, -3.0))) is None


def test_clamp_growth(assumptions: ValuationAssumptions) -> None:
    assert clamp_growth(0.5, assumptions) == 0.15
    assert clamp_growth(-0.4, assumptions) == -0.05
    assert clamp_growth(0.07, assumptions) == 0.07
