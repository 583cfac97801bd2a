from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
import sys
from typing import Any, Callable, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from screener_metrics.domain.schemas import (  # noqa: E402
    CashFlowRecord,
    MarketValue,
    PricePoint,
    SymbolOutcome,
    ValuationAssumptions,
)
from screener_metrics.errors import ProviderError  # noqa: E402
from screener_metrics.io.database import table_for_index  # noqa: E402
from screener_metrics.pipeline import MetricsOrchestrator, RateLimiter, RetryPolicy  # noqa: E402


AS_OF = date(2025, 6, 30)


def weekly_points(
    end: date = AS_OF,
    weeks: int = 11 * 52 + 2,
    start_price: float = 100.0,
    weekly_growth: float = 0.002,
) -> list[PricePoint]:
    """Build an ascending weekly price history ending on a given date."""
    return [
        PricePoint(
            date=end - timedelta(weeks=weeks - 1 - offset),
            close=start_price * (1.0 + weekly_growth) ** offset,
        )
        for offset in range(weeks)
    ]


class FakeProvider:
    """In-memory DataProvider with scripted failures."""

    def __init__(self) -> None:
        self.prices: dict[str, list[PricePoint]] = {}
        self.cash_flows: dict[str, list[CashFlowRecord]] = {}
        self.markets: dict[str, MarketValue] = {}
        self.failures: dict[tuple[str, str], list[ProviderError]] = {}
        self.repeating: set[tuple[str, str]] = set()
        self.calls: list[tuple[str, str, tuple[Any, ...]]] = []
        self.on_call: Callable[[str, str], None] | None = None

    def add_symbol(
        self,
        symbol: str,
        prices: list[PricePoint] | None = None,
        cash_flows: Mapping[int, float] | None = None,
        market_cap: float | None = None,
    ) -> None:
        self.prices[symbol] = list(prices or [])
        self.cash_flows[symbol] = [
            CashFlowRecord(fiscal_year=year, free_cash_flow=value)
            for year, value in (cash_flows or {}).items()
        ]
        self.markets[symbol] = MarketValue(price=10.0, market_capitalization=market_cap)

    def fail(self, symbol: str, method: str, *errors: ProviderError, repeat: bool = False) -> None:
        """Queue errors for a call; with repeat the last one never clears."""
        self.failures.setdefault((symbol, method), []).extend(errors)
        if repeat:
            self.repeating.add((symbol, method))

    def _record(self, symbol: str, method: str, *args: Any) -> None:
        self.calls.append((symbol, method, args))
        if self.on_call is not None:
            self.on_call(symbol, method)
        queued = self.failures.get((symbol, method))
        if queued:
            error = queued[0]
            if len(queued) > 1 or (symbol, method) not in self.repeating:
                queued.pop(0)
            raise error

    def fetch_historical_prices(self, symbol: str, from_date: date, to_date: date) -> list[PricePoint]:
        self._record(symbol, "prices", from_date, to_date)
        return list(self.prices.get(symbol, []))

    def fetch_annual_free_cash_flow(self, symbol: str, years_back: int) -> list[CashFlowRecord]:
        self._record(symbol, "cash_flow", years_back)
        return list(self.cash_flows.get(symbol, []))

    def fetch_current_market_value(self, symbol: str) -> MarketValue:
        self._record(symbol, "market")
        return self.markets.get(symbol, MarketValue())


class FakeGateway:
    """In-memory PersistenceGateway keyed by (index, symbol)."""

    def __init__(self) -> None:
        self.symbols: dict[str, list[str]] = {}
        self.rows: dict[tuple[str, str], dict[str, float | None]] = {}
        self.updates: list[tuple[str, str, dict[str, float | None]]] = []
        self.outcomes: list[tuple[str, SymbolOutcome]] = []
        self.update_error: Exception | None = None
        self.record_error: Exception | None = None

    def list_symbols_needing_metrics(self, index_name: str, only_missing: bool = False) -> list[str]:
        table_for_index(index_name)
        return sorted(self.symbols.get(index_name, []))

    def update_metrics(self, index_name: str, symbol: str, columns: Mapping[str, float | None]) -> None:
        if self.update_error is not None:
            raise self.update_error
        self.updates.append((index_name, symbol, dict(columns)))
        self.rows.setdefault((index_name, symbol), {}).update(columns)

    def record_outcome(self, index_name: str, run_at: object, outcome: SymbolOutcome) -> None:
        if self.record_error is not None:
            raise self.record_error
        self.outcomes.append((index_name, outcome))


@pytest.fixture
def assumptions() -> ValuationAssumptions:
    return ValuationAssumptions(
        discount_rate=0.08,
        terminal_growth_rate=0.02,
        projection_years=10,
        growth_clamp_min=-0.05,
        growth_clamp_max=0.15,
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sleeps() -> list[float]:
    """Collect every requested sleep instead of waiting."""
    return []


@pytest.fixture
def make_orchestrator(
    provider: FakeProvider,
    gateway: FakeGateway,
    assumptions: ValuationAssumptions,
    sleeps: list[float],
) -> Callable[..., MetricsOrchestrator]:
    """Build an orchestrator over the fakes with instant sleeps."""

    def factory(**overrides: Any) -> MetricsOrchestrator:
        options: dict[str, Any] = {
            "rate_limiter": RateLimiter(0.0, sleep=sleeps.append),
            "retry_policy": RetryPolicy(3, 5.0, sleep=sleeps.append),
        }
        options.update(overrides)
        return MetricsOrchestrator(
            options.pop("provider", provider),
            options.pop("gateway", gateway),
            options.pop("assumptions", assumptions),
            **options,
        )

    return factory


@pytest.fixture
def config_override(monkeypatch: pytest.MonkeyPatch) -> Callable[[dict[str, Any]], None]:
    """Replace the cached configuration for a single test."""
    from screener_metrics import config

    def apply(values: dict[str, Any]) -> None:
        monkeypatch.setattr(config, "_CONFIG_CACHE", values)

    return apply


@pytest.fixture
def as_of() -> date:
    return AS_OF


@pytest.fixture
def price_history() -> Callable[..., list[PricePoint]]:
    """Expose the weekly price builder to tests."""
    return weekly_points
