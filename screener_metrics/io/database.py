from __future__ import annotations

"""SQL persistence for derived metrics, the outcome log and coverage checks."""

import logging
from datetime import datetime
from typing import Iterable, Mapping

from sqlalchemy import Engine, create_engine, inspect, text

from screener_metrics.domain.schemas import SymbolOutcome
from screener_metrics.errors import ConfigurationError
from screener_metrics.logic.metrics import METRIC_COLUMNS

logger = logging.getLogger(__name__)

INDEX_TABLES: dict[str, str] = {
    "sp500": "sp500_companies",
    "nasdaq100": "nasdaq100_companies",
    "dowjones": "dow_jones_companies",
    "ftse100": "ftse100_companies",
    "companies": "companies",
}

COLUMN_TYPES: dict[str, str] = {
    **{column: "NUMERIC(8, 2)" for column in METRIC_COLUMNS if column.startswith(("return_", "max_drawdown_"))},
    **{column: "NUMERIC(10, 4)" for column in METRIC_COLUMNS if column.startswith("ar_mdd_ratio_")},
    "dcf_enterprise_value": "NUMERIC(20, 0)",
    "margin_of_safety": "NUMERIC(10, 4)",
    "dcf_implied_growth": "NUMERIC(10, 4)",
    "fcf_growth_rate": "NUMERIC(10, 4)",
    "latest_fcf": "NUMERIC(20, 0)",
}

RUN_LOG_TABLE = "metric_run_log"


def get_engine(database_url: str) -> Engine:
    """Create a SQLAlchemy engine from a database URL.

    Args:
        database_url (str): SQLAlchemy URL, e.g. ``postgresql+psycopg://...`` or ``sqlite:///...``.

    Returns:
        Engine: SQLAlchemy engine.
    """
    return create_engine(database_url, future=True)


def table_for_index(index_name: str) -> str:
    """Resolve an index name to its company table.

    Raises:
        ConfigurationError: When the index is unknown.
    """
    table = INDEX_TABLES.get(index_name.strip().lower())
    if table is None:
        known = ", ".join(sorted(INDEX_TABLES))
        raise ConfigurationError(f"Unknown index {index_name!r}; expected one of: {known}")
    return table


def ensure_schema(engine: Engine, index_names: Iterable[str] | None = None) -> None:
    """Ensure the index tables, their metric columns and the outcome log exist.

    Existing company tables are left as they are apart from adding any
    missing metric columns.

    Args:
        engine (Engine): SQLAlchemy engine.
        index_names (Iterable[str] | None): Indexes to prepare, defaults to all.

    Returns:
        None: Creates schema when missing.
    """
    tables = [table_for_index(name) for name in (index_names or INDEX_TABLES)]
    metric_ddl = ",\n".join(f"        {column} {COLUMN_TYPES[column]} NULL" for column in METRIC_COLUMNS)
    schema_sql = "".join(
        f"""
    CREATE TABLE IF NOT EXISTS {table} (
        symbol TEXT NOT NULL PRIMARY KEY,
        name TEXT NULL,
{metric_ddl}
    );"""
        for table in tables
    )
    schema_sql += f"""
    CREATE TABLE IF NOT EXISTS {RUN_LOG_TABLE} (
        index_name TEXT NOT NULL,
        symbol TEXT NOT NULL,
        run_at TEXT NOT NULL,
        status TEXT NOT NULL,
        error_code TEXT NULL,
        http_status INTEGER NULL,
        message TEXT NULL,
        solver_converged INTEGER NULL,
        PRIMARY KEY (index_name, symbol, run_at)
    );
    CREATE INDEX IF NOT EXISTS IX_{RUN_LOG_TABLE}_status
        ON {RUN_LOG_TABLE} (index_name, status, run_at);
    """
    with engine.begin() as conn:
        for statement in (stmt.strip() for stmt in schema_sql.split(";")):
            if statement:
                conn.exec_driver_sql(statement)
    _add_missing_metric_columns(engine, tables)


def _add_missing_metric_columns(engine: Engine, tables: Iterable[str]) -> None:
    inspector = inspect(engine)
    missing = [
        (table, column)
        for table in tables
        for existing in [{info["name"] for info in inspector.get_columns(table)}]
        for column in METRIC_COLUMNS
        if column not in existing
    ]
    if not missing:
        return
    with engine.begin() as conn:
        for table, column in missing:
            logger.info("Adding metric column %s.%s", table, column)
            conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {column} {COLUMN_TYPES[column]} NULL")


class SqlMetricsGateway:
    """PersistenceGateway over the per-index company tables."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def list_symbols_needing_metrics(self, index_name: str, only_missing: bool = False) -> list[str]:
        """Return the sorted, de-duplicated worklist for an index.

        Args:
            index_name (str): Index whose table to read.
            only_missing (bool): Only return symbols with at least one NULL metric column.

        Returns:
            list[str]: Symbols to process.
        """
        table = table_for_index(index_name)
        query = f"SELECT symbol FROM {table}"
        if only_missing:
            query += " WHERE " + " OR ".join(f"{column} IS NULL" for column in METRIC_COLUMNS)
        with self._engine.connect() as conn:
            rows = conn.execute(text(query)).fetchall()
        symbols = sorted({str(row[0]).strip() for row in rows if row[0] is not None and str(row[0]).strip()})
        logger.debug("Loaded %d symbols from %s (only_missing=%s)", len(symbols), table, only_missing)
        return symbols

    def update_metrics(
        self,
        index_name: str,
        symbol: str,
        columns: Mapping[str, float | None],
    ) -> None:
        """Update only the supplied metric columns for one symbol.

        Args:
            index_name (str): Index whose table to update.
            symbol (str): Symbol row to update.
            columns (Mapping[str, float | None]): Metric columns to set; others are untouched.

        Returns:
            None: Writes to the database.
        """
        unknown = sorted(set(columns) - set(METRIC_COLUMNS))
        if unknown:
            raise ValueError(f"Unknown metric columns: {', '.join(unknown)}")
        if not columns:
            return
        table = table_for_index(index_name)
        assignments = ", ".join(f"{column} = :{column}" for column in columns)
        update_sql = text(f"UPDATE {table} SET {assignments} WHERE symbol = :symbol")
        with self._engine.begin() as conn:
            result = conn.execute(update_sql, {**columns, "symbol": symbol})
        if result.rowcount == 0:
            logger.warning("No %s row found for %s; metrics not stored", table, symbol)

    def record_outcome(self, index_name: str, run_at: datetime, outcome: SymbolOutcome) -> None:
        """Append a terminal per-symbol outcome to the run log."""
        insert_sql = text(
            f"""
            INSERT INTO {RUN_LOG_TABLE} (
                index_name,
                symbol,
                run_at,
                status,
                error_code,
                http_status,
                message,
                solver_converged
            )
            VALUES (
                :index_name,
                :symbol,
                :run_at,
                :status,
                :error_code,
                :http_status,
                :message,
                :solver_converged
            )
            """
        )
        row = {
            "index_name": index_name,
            "symbol": outcome.symbol,
            "run_at": run_at.isoformat(),
            "status": outcome.status,
            "error_code": outcome.error_code,
            "http_status": outcome.http_status,
            "message": outcome.message,
            "solver_converged": None if outcome.solver_converged is None else int(outcome.solver_converged),
        }
        with self._engine.begin() as conn:
            conn.execute(insert_sql, row)


def count_metric_coverage(engine: Engine, index_name: str) -> tuple[int, dict[str, int]]:
    """Count non-NULL values per metric column for an index.

    Args:
        engine (Engine): SQLAlchemy engine.
        index_name (str): Index whose table to inspect.

    Returns:
        tuple[int, dict[str, int]]: Total symbols and non-NULL count per column.
    """
    table = table_for_index(index_name)
    counts = ", ".join(f"COUNT({column}) AS {column}" for column in METRIC_COLUMNS)
    with engine.connect() as conn:
        row = conn.execute(text(f"SELECT COUNT(*) AS total, {counts} FROM {table}")).mappings().one()
    return int(row["total"]), {column: int(row[column]) for column in METRIC_COLUMNS}


def load_run_log(engine: Engine, index_name: str, run_at: datetime | None = None) -> list[dict[str, object]]:
    """Return outcome log rows for an index, optionally for a single run."""
    query = (
        f"SELECT index_name, symbol, run_at, status, error_code, http_status, message, solver_converged "
        f"FROM {RUN_LOG_TABLE} WHERE index_name = :index_name"
    )
    params: dict[str, object] = {"index_name": index_name}
    if run_at is not None:
        query += " AND run_at = :run_at"
        params["run_at"] = run_at.isoformat()
    query += " ORDER BY run_at, symbol"
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(text(query), params).mappings()]
