from __future__ import annotations

"""Financial Modeling Prep data provider (network I/O happens here)."""

import logging
from dataclasses import dataclass
from datetime import date
from math import isfinite
from typing import Any, Iterable, Mapping

import requests  # type: ignore[import-untyped]

from screener_metrics.config import get_api_key, get_provider_settings
from screener_metrics.domain.schemas import CashFlowRecord, MarketValue, PricePoint
from screener_metrics.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

NOT_FOUND_STATUS = 404


@dataclass(frozen=True)
class FetchResult:
    """Container for provider fetch results."""

    payload: object | None
    error_code: str | None
    message: str | None
    http_status: int | None


class FmpDataProvider:
    """DataProvider backed by the Financial Modeling Prep REST API.

    A 404 response is treated as "no data" rather than a failure, so unknown
    or delisted symbols end up skipped instead of failed.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        configured_url, configured_timeout = get_provider_settings()
        self._api_key = api_key or get_api_key()
        if not self._api_key:
            raise ConfigurationError("FMP_API_KEY is not set")
        self._base_url = (base_url or configured_url).rstrip("/")
        self._timeout = configured_timeout if timeout is None else timeout

    def fetch_historical_prices(self, symbol: str, from_date: date, to_date: date) -> list[PricePoint]:
        """Fetch daily closes between two dates, in provider order.

        Args:
            symbol (str): Ticker symbol.
            from_date (date): First date requested.
            to_date (date): Last date requested.

        Returns:
            list[PricePoint]: Parsed points; rows without a date or close are dropped.
        """
        payload = self._get(
            f"/historical-price-full/{symbol}",
            {"from": from_date.isoformat(), "to": to_date.isoformat()},
        )
        rows = payload.get("historical") if isinstance(payload, Mapping) else None
        points = list(_parse_price_rows(rows if isinstance(rows, list) else []))
        logger.debug("Fetched %d price rows for %s", len(points), symbol)
        return points

    def fetch_annual_free_cash_flow(self, symbol: str, years_back: int) -> list[CashFlowRecord]:
        """Fetch annual free cash flow statements, latest first as returned."""
        payload = self._get(
            f"/cash-flow-statement/{symbol}",
            {"period": "annual", "limit": str(years_back)},
        )
        records = list(_parse_cash_flow_rows(payload if isinstance(payload, list) else []))
        logger.debug("Fetched %d cash flow statements for %s", len(records), symbol)
        return records

    def fetch_current_market_value(self, symbol: str) -> MarketValue:
        """Fetch the current price and market capitalization.

        When the profile omits market capitalization it is rebuilt from the
        latest weighted average share count times the profile price.

        Args:
            symbol (str): Ticker symbol.

        Returns:
            MarketValue: Price and market capitalization, either possibly None.
        """
        profile = _first_row(self._get(f"/profile/{symbol}", {}))
        price = _coerce_number(profile.get("price"))
        market_cap = _coerce_number(profile.get("mktCap"))
        if _positive(market_cap) or not _positive(price):
            return MarketValue(price=price, market_capitalization=market_cap)
        statement = _first_row(
            self._get(f"/income-statement/{symbol}", {"period": "annual", "limit": "1"})
        )
        shares = _coerce_number(statement.get("weightedAverageShsOut"))
        if _positive(shares):
            market_cap = shares * price
            logger.info("Derived market cap for %s from shares outstanding: %.0f", symbol, market_cap)
        return MarketValue(price=price, market_capitalization=market_cap)

    def _get(self, path: str, params: Mapping[str, str]) -> object:
        result = self._fetch(path, params)
        if result.error_code is not None:
            raise ProviderError(
                result.error_code,
                result.message or "Provider request failed",
                http_status=result.http_status,
            )
        return result.payload

    def _fetch(self, path: str, params: Mapping[str, str]) -> FetchResult:
        """Issue one GET request and classify the outcome."""
        try:
            response = requests.get(
                f"{self._base_url}{path}",
                params={**params, "apikey": self._api_key},
                timeout=self._timeout,
            )
            if response.status_code == NOT_FOUND_STATUS:
                logger.info("Provider returned 404 for %s; treating as no data", path)
                return FetchResult(payload=None, error_code=None, message=None, http_status=NOT_FOUND_STATUS)
            response.raise_for_status()
            payload = response.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            return FetchResult(
                payload=None,
                error_code="http_error",
                message=_redact(str(exc), self._api_key),
                http_status=status,
            )
        except requests.Timeout as exc:
            return FetchResult(
                payload=None,
                error_code="timeout",
                message=_redact(str(exc), self._api_key),
                http_status=None,
            )
        except ValueError as exc:
            return FetchResult(
                payload=None,
                error_code="decode_error",
                message=str(exc),
                http_status=None,
            )
        except requests.RequestException as exc:
            status = exc.response.status_code if exc.response is not None else None
            return FetchResult(
                payload=None,
                error_code="request_error",
                message=_redact(str(exc), self._api_key),
                http_status=status,
            )
        if isinstance(payload, dict) and "Error Message" in payload:
            return FetchResult(
                payload=None,
                error_code="provider_error",
                message=str(payload["Error Message"]),
                http_status=None,
            )
        return FetchResult(payload=payload, error_code=None, message=None, http_status=None)


def _parse_price_rows(rows: Iterable[Any]) -> Iterable[PricePoint]:
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        row_date = _coerce_date(row.get("date"))
        close = _coerce_number(row.get("close"))
        if row_date is None or close is None:
            continue
        yield PricePoint(date=row_date, close=close, adjusted_close=_coerce_number(row.get("adjClose")))


def _parse_cash_flow_rows(rows: Iterable[Any]) -> Iterable[CashFlowRecord]:
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        fiscal_year = _fiscal_year(row)
        free_cash_flow = _coerce_number(row.get("freeCashFlow"))
        if fiscal_year is None or free_cash_flow is None:
            continue
        yield CashFlowRecord(fiscal_year=fiscal_year, free_cash_flow=free_cash_flow)


def _fiscal_year(row: Mapping[str, Any]) -> int | None:
    """Return calendarYear, falling back to the statement date's year."""
    calendar_year = row.get("calendarYear")
    if isinstance(calendar_year, (int, str)) and str(calendar_year).strip().isdigit():
        return int(str(calendar_year).strip())
    statement_date = _coerce_date(row.get("date"))
    return statement_date.year if statement_date is not None else None


def _first_row(payload: object) -> Mapping[str, Any]:
    if isinstance(payload, list) and payload and isinstance(payload[0], Mapping):
        return payload[0]
    return {}


def _coerce_date(value: object) -> date | None:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _coerce_number(value: object) -> float | None:
    """Coerce a JSON number or numeric string to a finite float."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if isfinite(number) else None


def _positive(value: float | None) -> bool:
    return value is not None and value > 0


def _redact(message: str, secret: str) -> str:
    return message.replace(secret, "***") if secret else message
