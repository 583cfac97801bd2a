from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Mapping, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

SymbolStatus = Literal["done", "skipped", "failed"]
TradingDate = date


class PricePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: TradingDate
    close: float
    adjusted_close: float | None = None

    @property
    def price(self) -> float:
        """Return the adjusted close when usable, otherwise the raw close."""
        if self.adjusted_close is not None and self.adjusted_close > 0:
            return self.adjusted_close
        return self.close


class PriceSeries(BaseModel):
    model_config = ConfigDict(frozen=True)

    points: Tuple[PricePoint, ...]

    @model_validator(mode="after")
    def _validate_order(self) -> "PriceSeries":
        """Validate that dates are unique and strictly ascending.

        Args:
            self (PriceSeries): The model instance being validated.

        Returns:
            PriceSeries: The validated model instance.
        """
        dates = [point.date for point in self.points]
        if any(later <= earlier for earlier, later in zip(dates, dates[1:])):
            raise ValueError("price points must have unique dates in ascending order")
        return self

    def __len__(self) -> int:
        return len(self.points)


class CashFlowRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    fiscal_year: int
    free_cash_flow: float


class CashFlowHistory(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Index 0 is the latest fiscal year.
    records: Tuple[CashFlowRecord, ...]

    @model_validator(mode="after")
    def _validate_order(self) -> "CashFlowHistory":
        """Validate that fiscal years are unique and most-recent-first."""
        years = [record.fiscal_year for record in self.records]
        if any(older >= newer for newer, older in zip(years, years[1:])):
            raise ValueError("cash flow records must be unique and ordered latest first")
        return self

    @property
    def latest(self) -> CashFlowRecord | None:
        return self.records[0] if self.records else None


class MarketValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float | None = None
    market_capitalization: float | None = None


class ValuationAssumptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    discount_rate: float = Field(gt=0)
    terminal_growth_rate: float
    projection_years: int = Field(gt=0)
    growth_clamp_min: float
    growth_clamp_max: float


class SolverResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    growth_rate: float
    converged: bool
    iterations: int


class ValuationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    enterprise_value: float | None = None
    margin_of_safety: float | None = None
    implied_growth_rate: float | None = None
    growth_rate: float | None = None
    latest_fcf: float | None = None
    solver_converged: bool | None = None


class PerformanceMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    return_3y: float | None = None
    return_5y: float | None = None
    return_10y: float | None = None
    max_drawdown_3y: float | None = None
    max_drawdown_5y: float | None = None
    max_drawdown_10y: float | None = None
    ar_mdd_ratio_3y: float | None = None
    ar_mdd_ratio_5y: float | None = None
    ar_mdd_ratio_10y: float | None = None


class SymbolOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    status: SymbolStatus
    error_code: str | None = None
    http_status: int | None = None
    message: str | None = None
    columns: Mapping[str, float | None] = Field(default_factory=dict)
    solver_converged: bool | None = None


class RunSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    index_name: str
    started_at: datetime
    finished_at: datetime
    as_of: date
    updated: int
    skipped: int
    errors: int
    cancelled: bool = False
    outcomes: Tuple[SymbolOutcome, ...] = ()
