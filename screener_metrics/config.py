from __future__ import annotations

"""Configuration loader for the metrics engine."""

import os
from pathlib import Path
from typing import Any

import tomllib
from pydantic import ValidationError

from screener_metrics.domain.schemas import ValuationAssumptions
from screener_metrics.errors import ConfigurationError


DEFAULT_DISCOUNT_RATE = 0.08
DEFAULT_TERMINAL_GROWTH_RATE = 0.02
DEFAULT_PROJECTION_YEARS = 10
DEFAULT_GROWTH_CLAMP_MIN = -0.05
DEFAULT_GROWTH_CLAMP_MAX = 0.15
DEFAULT_GROWTH_RATE = 0.04

DEFAULT_SOLVER_LOWER = -0.50
DEFAULT_SOLVER_UPPER = 1.00
DEFAULT_SOLVER_ITERATIONS = 100
DEFAULT_SOLVER_REL_TOL = 1e-4

DEFAULT_MIN_DRAWDOWN_POINTS = 30
DEFAULT_MIN_RETURN_POINTS = 100
DEFAULT_MAX_STALENESS_DAYS = 14
DEFAULT_FCF_YEARS_BACK = 10

DEFAULT_PROVIDER_BASE_URL = "https://financialmodelingprep.com/api/v3"
DEFAULT_PROVIDER_TIMEOUT = 30.0

DEFAULT_REQUEST_INTERVAL = 0.3
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 5.0
DEFAULT_MAX_WORKERS = 1

API_KEY_ENV = "FMP_API_KEY"
DB_URL_ENV = "SCREENER_METRICS_DB_URL"

_CONFIG_CACHE: dict[str, Any] | None = None


def load_config() -> dict[str, Any]:
    """Load configuration from the repository root config file.

    Args:
        None

    Returns:
        dict[str, Any]: Parsed configuration values.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None:
        return _CONFIG_CACHE
    config_path = Path(__file__).resolve().parents[1] / "config.toml"
    _CONFIG_CACHE = (
        tomllib.loads(config_path.read_text(encoding="utf-8")) if config_path.exists() else {}
    )
    return _CONFIG_CACHE


def get_valuation_assumptions() -> ValuationAssumptions:
    """Return the DCF assumptions for the current run.

    Values are not cross-checked here; the orchestrator validates them once
    at startup.

    Args:
        None

    Returns:
        ValuationAssumptions: Discount, terminal growth, horizon and growth clamps.
    """
    valuation = _section("valuation")
    try:
        return ValuationAssumptions(
            discount_rate=_coerce_float(valuation.get("discount_rate"), DEFAULT_DISCOUNT_RATE),
            terminal_growth_rate=_coerce_float(
                valuation.get("terminal_growth_rate"), DEFAULT_TERMINAL_GROWTH_RATE
            ),
            projection_years=_coerce_int(
                valuation.get("projection_years"), DEFAULT_PROJECTION_YEARS
            ),
            growth_clamp_min=_coerce_float(
                valuation.get("growth_clamp_min"), DEFAULT_GROWTH_CLAMP_MIN
            ),
            growth_clamp_max=_coerce_float(
                valuation.get("growth_clamp_max"), DEFAULT_GROWTH_CLAMP_MAX
            ),
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid [valuation] settings: {exc}") from exc


def get_default_growth_rate() -> float:
    """Return the growth rate used when cash flow history cannot supply one."""
    valuation = _section("valuation")
    return _coerce_float(valuation.get("default_growth_rate"), DEFAULT_GROWTH_RATE)


def get_solver_settings() -> tuple[float, float, int, float]:
    """Return the implied growth solver bracket, iteration budget and tolerance.

    Args:
        None

    Returns:
        tuple[float, float, int, float]: Lower bound, upper bound, iterations, relative tolerance.
    """
    solver = _section("solver")
    return (
        _coerce_float(solver.get("lower_bound"), DEFAULT_SOLVER_LOWER),
        _coerce_float(solver.get("upper_bound"), DEFAULT_SOLVER_UPPER),
        _coerce_int(solver.get("max_iterations"), DEFAULT_SOLVER_ITERATIONS),
        _coerce_float(solver.get("relative_tolerance"), DEFAULT_SOLVER_REL_TOL),
    )


def get_min_sample_counts() -> tuple[int, int]:
    """Return the minimum price counts for drawdown and return calculations.

    Args:
        None

    Returns:
        tuple[int, int]: Drawdown minimum and return minimum.
    """
    performance = _section("performance")
    return (
        _coerce_int(performance.get("min_drawdown_points"), DEFAULT_MIN_DRAWDOWN_POINTS),
        _coerce_int(performance.get("min_return_points"), DEFAULT_MIN_RETURN_POINTS),
    )


def get_max_staleness_days() -> int:
    """Return how many days the latest price may trail the reference date."""
    performance = _section("performance")
    return _coerce_int(performance.get("max_staleness_days"), DEFAULT_MAX_STALENESS_DAYS)


def get_fcf_years_back() -> int:
    """Return how many annual cash flow statements to request."""
    provider = _section("provider")
    return _coerce_int(provider.get("fcf_years_back"), DEFAULT_FCF_YEARS_BACK)


def get_provider_settings() -> tuple[str, float]:
    """Return the provider base URL and request timeout in seconds."""
    provider = _section("provider")
    base_url = provider.get("base_url")
    if not isinstance(base_url, str) or not base_url.strip():
        base_url = DEFAULT_PROVIDER_BASE_URL
    return base_url.rstrip("/"), _coerce_float(provider.get("timeout"), DEFAULT_PROVIDER_TIMEOUT)


def get_pipeline_settings() -> dict[str, Any]:
    """Return rate limit, retry and concurrency settings for the orchestrator.

    Args:
        None

    Returns:
        dict[str, Any]: Keys request_interval, retry_attempts, retry_base_delay,
        max_workers and only_missing.
    """
    pipeline = _section("pipeline")
    return {
        "request_interval": _coerce_float(pipeline.get("request_interval"), DEFAULT_REQUEST_INTERVAL),
        "retry_attempts": _coerce_int(pipeline.get("retry_attempts"), DEFAULT_RETRY_ATTEMPTS),
        "retry_base_delay": _coerce_float(pipeline.get("retry_base_delay"), DEFAULT_RETRY_BASE_DELAY),
        "max_workers": _coerce_int(pipeline.get("max_workers"), DEFAULT_MAX_WORKERS),
        "only_missing": _coerce_bool(pipeline.get("only_missing"), False),
    }


def get_api_key() -> str | None:
    """Return the provider API key from the environment."""
    value = os.getenv(API_KEY_ENV)
    return value.strip() if value and value.strip() else None


def get_database_url() -> str | None:
    """Return the SQLAlchemy database URL from the environment."""
    value = os.getenv(DB_URL_ENV)
    return value.strip() if value and value.strip() else None


def _section(name: str) -> dict[str, Any]:
    """Return a named config table, or an empty mapping when absent."""
    config = load_config()
    section = config.get(name, {}) if isinstance(config, dict) else {}
    return section if isinstance(section, dict) else {}


def _coerce_float(value: object, default: float) -> float:
    """Coerce a value to float with a default fallback.

    Args:
        value (object): Raw value to convert.
        default (float): Default to return on error.

    Returns:
        float: Parsed float or default.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return default
    return default


def _coerce_int(value: object, default: int) -> int:
    """Coerce a value to int with a default fallback."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


def _coerce_bool(value: object, default: bool) -> bool:
    """Coerce a value to bool with a default fallback."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default
