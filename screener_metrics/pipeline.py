from __future__ import annotations

"""Batch orchestration of metric computation across an index worklist."""

import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, date, datetime
from typing import Callable, Iterable, Mapping, Protocol, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from tqdm import tqdm  # type: ignore[import-untyped]

from screener_metrics.config import (
    get_default_growth_rate,
    get_fcf_years_back,
    get_max_staleness_days,
    get_min_sample_counts,
    get_pipeline_settings,
    get_solver_settings,
    get_valuation_assumptions,
)
from screener_metrics.domain.schemas import (
    CashFlowRecord,
    MarketValue,
    PricePoint,
    RunSummary,
    SymbolOutcome,
    ValuationAssumptions,
)
from screener_metrics.errors import ConfigurationError, ProviderError
from screener_metrics.logic.metrics import (
    DEFAULT_MAX_STALENESS_DAYS,
    DEFAULT_SOLVER_SETTINGS,
    HORIZONS,
    compute_performance_metrics,
    compute_valuation,
    to_metric_columns,
)
from screener_metrics.logic.timeseries import years_before
from screener_metrics.logic.validation import (
    normalize_cash_flow_history,
    normalize_price_series,
    validate_assumptions,
    validate_solver_settings,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DataProvider(Protocol):
    """Source of prices, annual free cash flow and current market value."""

    def fetch_historical_prices(
        self, symbol: str, from_date: date, to_date: date
    ) -> Sequence[PricePoint]: ...

    def fetch_annual_free_cash_flow(self, symbol: str, years_back: int) -> Sequence[CashFlowRecord]: ...

    def fetch_current_market_value(self, symbol: str) -> MarketValue: ...


class PersistenceGateway(Protocol):
    """Worklist source and partial-column metric sink."""

    def list_symbols_needing_metrics(self, index_name: str, only_missing: bool = False) -> list[str]: ...

    def update_metrics(
        self, index_name: str, symbol: str, columns: Mapping[str, float | None]
    ) -> None: ...

    def record_outcome(self, index_name: str, run_at: datetime, outcome: SymbolOutcome) -> None: ...


class RateLimiter:
    """Enforce a minimum interval between calls across threads."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = max(min_interval, 0.0)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_allowed: float | None = None

    def acquire(self) -> None:
        """Block until the next call slot opens."""
        with self._lock:
            now = self._clock()
            if self._next_allowed is not None and now < self._next_allowed:
                self._sleep(self._next_allowed - now)
                now = self._next_allowed
            self._next_allowed = now + self.min_interval


class RetryPolicy:
    """Retry retryable provider failures with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ConfigurationError(f"retry_attempts must be at least 1 ({max_attempts})")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Return the wait after a failed zero-based attempt."""
        return self.base_delay * 2**attempt

    def call(self, operation: Callable[[], T], label: str) -> T:
        """Run an operation, retrying while the provider error is retryable.

        Args:
            operation (Callable[[], T]): Provider call to run.
            label (str): Description used in log messages.

        Returns:
            T: The operation result.

        Raises:
            ProviderError: When the failure is fatal or attempts are exhausted.
        """
        attempt = 0
        while True:
            try:
                return operation()
            except ProviderError as exc:
                if not exc.is_retryable or attempt + 1 >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Transient failure for %s (%s, HTTP %s); retrying in %.1fs (attempt %d/%d)",
                    label,
                    exc.error_code,
                    exc.http_status,
                    delay,
                    attempt + 1,
                    self.max_attempts,
                )
                self._sleep(delay)
                attempt += 1


class MetricsOrchestrator:
    """Compute and persist valuation and performance metrics for an index.

    Each symbol moves through fetching, computing and persisting and ends as
    done, skipped or failed. A symbol's failure never aborts the batch.
    """

    def __init__(
        self,
        provider: DataProvider,
        gateway: PersistenceGateway,
        assumptions: ValuationAssumptions,
        *,
        default_growth_rate: float = 0.04,
        solver_settings: tuple[float, float, int, float] = DEFAULT_SOLVER_SETTINGS,
        min_drawdown_points: int = 30,
        min_return_points: int = 100,
        max_staleness_days: int = DEFAULT_MAX_STALENESS_DAYS,
        fcf_years_back: int = 10,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        max_workers: int = 1,
        only_missing: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> None:
        problems = [
            *validate_assumptions(assumptions),
            *validate_solver_settings(*solver_settings),
            *([] if max_workers >= 1 else [f"max_workers must be at least 1 ({max_workers})"]),
            *([] if fcf_years_back >= 1 else [f"fcf_years_back must be at least 1 ({fcf_years_back})"]),
            *([] if max_staleness_days >= 0 else [f"max_staleness_days must not be negative ({max_staleness_days})"]),
        ]
        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))
        self._provider = provider
        self._gateway = gateway
        self._assumptions = assumptions
        self._default_growth_rate = default_growth_rate
        self._solver_settings = solver_settings
        self._min_drawdown_points = min_drawdown_points
        self._min_return_points = min_return_points
        self._max_staleness_days = max_staleness_days
        self._fcf_years_back = fcf_years_back
        self._rate_limiter = rate_limiter or RateLimiter(0.0)
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_workers = max_workers
        self._only_missing = only_missing
        self._cancel_event = cancel_event or threading.Event()

    def run(self, index_name: str, as_of: date | None = None) -> RunSummary:
        """Process every symbol in an index worklist.

        Args:
            index_name (str): Index whose worklist to process.
            as_of (date | None): Reference date for look-backs, defaults to today (UTC).

        Returns:
            RunSummary: Counters and per-symbol outcomes for the run.
        """
        started_at = datetime.now(UTC)
        as_of = as_of or started_at.date()
        symbols = self._gateway.list_symbols_needing_metrics(index_name, only_missing=self._only_missing)
        logger.info(
            "Computing metrics for %d %s symbols as of %s (workers=%d)",
            len(symbols),
            index_name,
            as_of.isoformat(),
            self._max_workers,
        )
        if self._max_workers > 1:
            outcomes = self._run_concurrent(index_name, symbols, as_of, started_at)
        else:
            outcomes = self._run_sequential(index_name, symbols, as_of, started_at)
        cancelled = len(outcomes) < len(symbols)
        if cancelled:
            logger.warning(
                "Run for %s cancelled after %d of %d symbols",
                index_name,
                len(outcomes),
                len(symbols),
            )
        summary = RunSummary(
            index_name=index_name,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            as_of=as_of,
            updated=sum(1 for outcome in outcomes if outcome.status == "done"),
            skipped=sum(1 for outcome in outcomes if outcome.status == "skipped"),
            errors=sum(1 for outcome in outcomes if outcome.status == "failed"),
            cancelled=cancelled,
            outcomes=tuple(sorted(outcomes, key=lambda outcome: outcome.symbol)),
        )
        logger.info(
            "Finished %s: updated=%d skipped=%d errors=%d",
            index_name,
            summary.updated,
            summary.skipped,
            summary.errors,
        )
        return summary

    def process_symbol(
        self,
        index_name: str,
        symbol: str,
        as_of: date,
        run_at: datetime,
    ) -> SymbolOutcome:
        """Fetch, compute and persist metrics for one symbol and log its outcome."""
        outcome = self._compute_and_persist(index_name, symbol, as_of)
        try:
            self._gateway.record_outcome(index_name, run_at, outcome)
        except SQLAlchemyError as exc:
            logger.error("Failed to record outcome for %s: %s", symbol, exc)
        return outcome

    def _run_sequential(
        self,
        index_name: str,
        symbols: list[str],
        as_of: date,
        run_at: datetime,
    ) -> list[SymbolOutcome]:
        outcomes: list[SymbolOutcome] = []
        for symbol in _progress(symbols, index_name):
            if self._cancel_event.is_set():
                break
            outcomes.append(self.process_symbol(index_name, symbol, as_of, run_at))
        return outcomes

    def _run_concurrent(
        self,
        index_name: str,
        symbols: list[str],
        as_of: date,
        run_at: datetime,
    ) -> list[SymbolOutcome]:
        def process_if_active(symbol: str) -> SymbolOutcome | None:
            # Symbols not yet started when cancellation arrives are left untouched.
            if self._cancel_event.is_set():
                return None
            return self.process_symbol(index_name, symbol, as_of, run_at)

        outcomes: list[SymbolOutcome] = []
        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = [executor.submit(process_if_active, symbol) for symbol in symbols]
            for future in _progress(as_completed(futures), index_name, total=len(futures)):
                outcome = future.result()
                if outcome is not None:
                    outcomes.append(outcome)
        return outcomes

    def _compute_and_persist(self, index_name: str, symbol: str, as_of: date) -> SymbolOutcome:
        from_date = years_before(as_of, max(HORIZONS) + 1)
        try:
            points = self._fetch(
                lambda: self._provider.fetch_historical_prices(symbol, from_date, as_of),
                f"{symbol} prices",
            )
            records = self._fetch(
                lambda: self._provider.fetch_annual_free_cash_flow(symbol, self._fcf_years_back),
                f"{symbol} cash flow",
            )
            market = self._fetch(
                lambda: self._provider.fetch_current_market_value(symbol),
                f"{symbol} market value",
            )
        except ProviderError as exc:
            logger.warning(
                "Fetch failed for %s (%s, HTTP %s): %s",
                symbol,
                exc.error_code,
                exc.http_status,
                exc.message,
            )
            return SymbolOutcome(
                symbol=symbol,
                status="failed",
                error_code=exc.error_code,
                http_status=exc.http_status,
                message=exc.message,
            )

        series, price_warnings = normalize_price_series(points)
        history, cash_flow_warnings = normalize_cash_flow_history(records)
        for warning in (*price_warnings, *cash_flow_warnings):
            logger.debug("%s: %s", symbol, warning)
        performance = compute_performance_metrics(
            series,
            as_of,
            min_drawdown_points=self._min_drawdown_points,
            min_return_points=self._min_return_points,
            max_staleness_days=self._max_staleness_days,
        )
        valuation = compute_valuation(
            history,
            market,
            self._assumptions,
            default_growth_rate=self._default_growth_rate,
            solver_settings=self._solver_settings,
        )
        if performance is None and valuation is None:
            reason = _skip_reason(len(series), self._min_drawdown_points, history.latest, market)
            logger.info("Skipping %s: %s", symbol, reason)
            return SymbolOutcome(symbol=symbol, status="skipped", error_code="insufficient_data", message=reason)
        converged = valuation.solver_converged if valuation is not None else None
        if valuation is not None and converged is False:
            logger.warning(
                "Implied growth did not converge for %s; best estimate %.4f",
                symbol,
                valuation.implied_growth_rate,
            )

        columns = to_metric_columns(performance, valuation)
        try:
            self._gateway.update_metrics(index_name, symbol, columns)
        except SQLAlchemyError as exc:
            logger.warning("Failed to persist metrics for %s: %s", symbol, exc)
            return SymbolOutcome(
                symbol=symbol,
                status="failed",
                error_code="persist_error",
                message=str(exc),
                solver_converged=converged,
            )
        logger.debug("Persisted %d columns for %s", len(columns), symbol)
        return SymbolOutcome(symbol=symbol, status="done", columns=columns, solver_converged=converged)

    def _fetch(self, operation: Callable[[], T], label: str) -> T:
        def limited() -> T:
            self._rate_limiter.acquire()
            return operation()

        return self._retry_policy.call(limited, label)


def run_metrics_pipeline(
    index_names: Iterable[str],
    provider: DataProvider,
    gateway: PersistenceGateway,
    as_of: date | None = None,
    cancel_event: threading.Event | None = None,
    max_workers: int | None = None,
    only_missing: bool | None = None,
    on_summary: Callable[[RunSummary], None] | None = None,
) -> list[RunSummary]:
    """Build an orchestrator from configuration and run it for each index.

    Args:
        index_names (Iterable[str]): Indexes to process in order.
        provider (DataProvider): Data source.
        gateway (PersistenceGateway): Worklist and metric sink.
        as_of (date | None): Reference date shared by every index, defaults to today (UTC).
        cancel_event (threading.Event | None): Cooperative cancellation flag.
        max_workers (int | None): Override for the configured worker count.
        only_missing (bool | None): Override for the configured worklist filter.
        on_summary (Callable[[RunSummary], None] | None): Called as soon as each index finishes.

    Returns:
        list[RunSummary]: One summary per index processed.
    """
    settings = get_pipeline_settings()
    min_drawdown_points, min_return_points = get_min_sample_counts()
    orchestrator = MetricsOrchestrator(
        provider,
        gateway,
        get_valuation_assumptions(),
        default_growth_rate=get_default_growth_rate(),
        solver_settings=get_solver_settings(),
        min_drawdown_points=min_drawdown_points,
        min_return_points=min_return_points,
        max_staleness_days=get_max_staleness_days(),
        fcf_years_back=get_fcf_years_back(),
        rate_limiter=RateLimiter(settings["request_interval"]),
        retry_policy=RetryPolicy(settings["retry_attempts"], settings["retry_base_delay"]),
        max_workers=settings["max_workers"] if max_workers is None else max_workers,
        only_missing=settings["only_missing"] if only_missing is None else only_missing,
        cancel_event=cancel_event,
    )
    as_of = as_of or datetime.now(UTC).date()
    summaries: list[RunSummary] = []
    for index_name in index_names:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Cancellation requested; not starting %s", index_name)
            break
        summary = orchestrator.run(index_name, as_of)
        if on_summary is not None:
            on_summary(summary)
        summaries.append(summary)
    return summaries


def _progress(items: Iterable[T], index_name: str, total: int | None = None) -> Iterable[T]:
    return tqdm(
        items,
        total=total,
        desc=f"{index_name} metrics",
        unit="symbol",
        ascii=True,
        disable=not sys.stderr.isatty(),
    )


def _skip_reason(
    point_count: int,
    min_points: int,
    latest: CashFlowRecord | None,
    market: MarketValue,
) -> str:
    """Describe why neither metric group could be determined."""
    if latest is None:
        cash_flow = "no cash flow history"
    else:
        cash_flow = f"latest FCF {latest.free_cash_flow:g} for {latest.fiscal_year}"
    market_cap = market.market_capitalization
    return (
        f"{point_count} valid prices (need {min_points}); {cash_flow}; "
        f"market cap {'unavailable' if market_cap is None else f'{market_cap:g}'}"
    )
