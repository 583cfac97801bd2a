from .schemas import (
    CashFlowHistory,
    CashFlowRecord,
    MarketValue,
    PerformanceMetrics,
    PricePoint,
    PriceSeries,
    RunSummary,
    SolverResult,
    SymbolOutcome,
    SymbolStatus,
    ValuationAssumptions,
    ValuationResult,
)

__all__ = [
    "CashFlowHistory",
    "CashFlowRecord",
    "MarketValue",
    "PerformanceMetrics",
    "PricePoint",
    "PriceSeries",
    "RunSummary",
    "SolverResult",
    "SymbolOutcome",
    "SymbolStatus",
    "ValuationAssumptions",
    "ValuationResult",
]
