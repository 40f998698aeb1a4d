from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("backtest-results/all-backtests.db")

SWEEP_TABLE = "backtests"
ROLLING_TABLE = "rolling_backtests"

# Columns a ranking query may order by
RANKABLE = (
    "total_return",
    "total_return_pct",
    "sharpe_ratio",
    "max_drawdown_pct",
    "win_rate",
    "num_trades",
)

_INDEXES = {
    SWEEP_TABLE: [
        ("idx_backtests_run", "run_id"),
        ("idx_backtests_asset", "asset, interval, strategy"),
        ("idx_backtests_params", "low_threshold, high_threshold, leverage"),
        ("idx_backtests_return", "total_return DESC"),
        ("idx_backtests_sharpe", "sharpe_ratio DESC"),
    ],
    ROLLING_TABLE: [
        ("idx_rolling_run", "run_id"),
        ("idx_rolling_window", "asset, interval, strategy, window_index"),
        ("idx_rolling_params", "low_threshold, high_threshold, leverage"),
        ("idx_rolling_return", "total_return_pct DESC"),
        ("idx_rolling_sharpe", "sharpe_ratio DESC"),
    ],
}


def new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"{ts}_{uuid.uuid4().hex[:8]}"


class BacktestResultStore:
    """
    SQLite store for sweep tables. Writes go through pandas `to_sql`, reads
    through `read_sql_query`; one connection per call.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _table_exists(self, conn: sqlite3.Connection, table: str) -> bool:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ).fetchone()
        return row is not None

    def _append(self, df: pd.DataFrame, table: str) -> None:
        with closing(self._connect()) as conn:
            df.to_sql(table, conn, if_exists="append", index=False)
            for name, cols in _INDEXES[table]:
                conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {table} ({cols})")
            conn.commit()

    # -------------------------
    # Writes
    # -------------------------

    def save_sweep(self, df: pd.DataFrame, run_id: Optional[str] = None) -> str:
        run_id = run_id or new_run_id()
        if df.empty:
            logger.warning("Sweep produced no rows; nothing stored for run %s", run_id)
            return run_id

        out = df.copy()
        out.insert(0, "run_id", run_id)
        out.insert(1, "run_timestamp", datetime.now(timezone.utc).isoformat())
        out["error"] = out["error"].astype(object).where(out["error"].notna(), None)
        self._append(out, SWEEP_TABLE)
        logger.info("Saved %d sweep rows to %s (run %s)", len(out), self.db_path, run_id)
        return run_id

    def save_rolling(self, df: pd.DataFrame, run_id: str, window_days: int) -> int:
        if df.empty:
            return 0
        out = df.copy()
        out.insert(0, "run_id", run_id)
        out.insert(1, "run_timestamp", datetime.now(timezone.utc).isoformat())
        out.insert(2, "window_size_days", int(window_days))
        out["error"] = out["error"].astype(object).where(out["error"].notna(), None)
        self._append(out, ROLLING_TABLE)
        return len(out)

    # -------------------------
    # Queries
    # -------------------------

    def top(
        self,
        by: str = "total_return",
        limit: int = 10,
        asset: Optional[str] = None,
        strategy: Optional[str] = None,
        interval: Optional[str] = None,
    ) -> pd.DataFrame:
        """Best successful rows ordered by `by` (descending)."""
        if by not in RANKABLE:
            raise ValueError(f"cannot rank by {by!r}; expected one of {RANKABLE}")

        with closing(self._connect()) as conn:
            if not self._table_exists(conn, SWEEP_TABLE):
                return pd.DataFrame()

            where = ["error IS NULL"]
            params: list[Any] = []
            if asset:
                where.append("asset = ?")
                params.append(asset.upper())
            if strategy:
                where.append("strategy = ?")
                params.append(strategy.lower())
            if interval:
                where.append("interval = ?")
                params.append(interval)
            params.append(int(limit))

            # max drawdown ranks ascending: smaller is better
            order = "ASC" if by == "max_drawdown_pct" else "DESC"
            sql = f"""
                SELECT run_id, asset, interval, strategy, low_threshold, high_threshold,
                       leverage, total_return, total_return_pct, sharpe_ratio,
                       max_drawdown_pct, num_trades, win_rate, liquidations
                FROM {SWEEP_TABLE}
                WHERE {' AND '.join(where)}
                ORDER BY {by} {order}, sharpe_ratio DESC
                LIMIT ?
            """
            return pd.read_sql_query(sql, conn, params=params)

    def params(
        self,
        asset: str,
        low_threshold: float,
        high_threshold: float,
        leverage: float,
        strategy: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Most recent stored row for one parameter set, or None."""
        with closing(self._connect()) as conn:
            if not self._table_exists(conn, SWEEP_TABLE):
                return None
            sql = f"""
                SELECT * FROM {SWEEP_TABLE}
                WHERE asset = ? AND low_threshold = ? AND high_threshold = ? AND leverage = ?
            """
            args: list[Any] = [asset.upper(), float(low_threshold), float(high_threshold), float(leverage)]
            if strategy:
                sql += " AND strategy = ?"
                args.append(strategy.lower())
            sql += " ORDER BY run_timestamp DESC LIMIT 1"
            df = pd.read_sql_query(sql, conn, params=args)
        if df.empty:
            return None
        return df.iloc[0].to_dict()

    def stats(self) -> Dict[str, Any]:
        with closing(self._connect()) as conn:
            if not self._table_exists(conn, SWEEP_TABLE):
                return {"total_records": 0, "total_runs": 0}
            df = pd.read_sql_query(
                f"""
                SELECT
                    COUNT(*) AS total_records,
                    COUNT(DISTINCT run_id) AS total_runs,
                    AVG(total_return_pct) AS avg_return_pct,
                    MAX(total_return_pct) AS max_return_pct,
                    MIN(total_return_pct) AS min_return_pct,
                    AVG(sharpe_ratio) AS avg_sharpe,
                    MAX(sharpe_ratio) AS max_sharpe,
                    AVG(max_drawdown_pct) AS avg_drawdown_pct,
                    SUM(CASE WHEN total_return > 0 THEN 1 ELSE 0 END) * 100.0 / COUNT(*) AS profitable_pct
                FROM {SWEEP_TABLE}
                WHERE error IS NULL
                """,
                conn,
            )
        return df.iloc[0].to_dict()

    def best_per_asset(self) -> pd.DataFrame:
        with closing(self._connect()) as conn:
            if not self._table_exists(conn, SWEEP_TABLE):
                return pd.DataFrame()
            df = pd.read_sql_query(
                f"SELECT * FROM {SWEEP_TABLE} WHERE error IS NULL", conn)
        if df.empty:
            return df
        idx = df.groupby("asset")["total_return"].idxmax()
        cols = ["asset", "strategy", "interval", "low_threshold", "high_threshold",
                "leverage", "total_return_pct", "sharpe_ratio"]
        return (
            df.loc[idx, cols]
            .sort_values("total_return_pct", ascending=False)
            .reset_index(drop=True)
        )

    def rolling(self, run_id: str) -> pd.DataFrame:
        with closing(self._connect()) as conn:
            if not self._table_exists(conn, ROLLING_TABLE):
                return pd.DataFrame()
            return pd.read_sql_query(
                f"SELECT * FROM {ROLLING_TABLE} WHERE run_id = ? ORDER BY window_index",
                conn,
                params=[run_id],
            )
