from __future__ import annotations

import argparse
import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from .backtest import run_backtest
from .config import StrategyConfig
from .errors import ValidationError
from .models import MarketSample
from .portfolio import DEFAULT_INITIAL_CAPITAL

logger = logging.getLogger(__name__)

Range = Tuple[float, float, float]   # (start, end, step)

RESULT_COLUMNS = [
    "asset",
    "strategy",
    "interval",
    "leverage",
    "low_threshold",
    "high_threshold",
    "extreme_low_threshold",
    "extreme_high_threshold",
    "total_return",
    "total_return_pct",
    "sharpe_ratio",
    "max_drawdown_pct",
    "num_trades",
    "num_round_trips",
    "win_rate",
    "liquidations",
    "avg_trade_return_pct",
    "best_trade_pct",
    "worst_trade_pct",
    "volatility_pct",
    "time_in_market_pct",
    "time_in_long_pct",
    "time_in_short_pct",
    "time_in_neutral_pct",
    "total_fees",
    "total_funding",
    "override_activations",
    "error",
]


def expand_range(
    start: float,
    end: float,
    step: float,
    clamp_min: float = 0,
    clamp_max: float = 100,
) -> List[int]:
    """
    Inclusive integer steps from start to end, clamped to [clamp_min,
    clamp_max]. The end value is always included even if the step skips it.
    """
    lo = max(min(start, end), clamp_min)
    hi = min(max(start, end), clamp_max)
    step = max(abs(step) or 1, 1)

    values = set()
    if lo == hi:
        values.add(round(lo))
    else:
        v = lo
        while v <= hi:
            values.add(round(v))
            v += step
        values.add(round(hi))
    return sorted(values)


@dataclass
class SweepGrid:
    leverage_levels: List[float] = field(
        default_factory=lambda: [1, 2, 3, 4, 5, 6, 8, 10, 12])
    low_values: List[float] = field(
        default_factory=lambda: expand_range(20, 50, 5))
    high_values: List[float] = field(
        default_factory=lambda: expand_range(50, 80, 5))
    extreme_low_values: List[float] = field(default_factory=lambda: [0])
    extreme_high_values: List[float] = field(default_factory=lambda: [100])

    @classmethod
    def from_ranges(
        cls,
        leverage_levels: Sequence[float],
        low_range: Range,
        high_range: Range,
        extreme_low_range: Range = (0, 0, 5),
        extreme_high_range: Range = (100, 100, 5),
    ) -> "SweepGrid":
        return cls(
            leverage_levels=list(leverage_levels),
            low_values=expand_range(*low_range),
            high_values=expand_range(*high_range),
            extreme_low_values=expand_range(*extreme_low_range),
            extreme_high_values=expand_range(*extreme_high_range),
        )


def generate_combinations(grid: SweepGrid) -> List[Dict[str, float]]:
    """Cartesian product of the grid with low < high enforced."""
    combos: List[Dict[str, float]] = []
    for leverage in grid.leverage_levels:
        for low in grid.low_values:
            for high in grid.high_values:
                if low >= high:
                    continue
                for extreme_low in grid.extreme_low_values:
                    if extreme_low > low:
                        continue
                    for extreme_high in grid.extreme_high_values:
                        if extreme_high < high:
                            continue
                        combos.append({
                            "leverage": leverage,
                            "low_threshold": low,
                            "high_threshold": high,
                            "extreme_low_threshold": extreme_low,
                            "extreme_high_threshold": extreme_high,
                        })
    return combos


def run_combination(
    samples: Sequence[MarketSample],
    base_config: StrategyConfig,
    combo: Dict[str, float],
    initial_capital: float = DEFAULT_INITIAL_CAPITAL,
) -> Dict[str, Any]:
    """
    One independent engine run. Failures come back as an error row so a
    bad combination never takes the rest of the sweep down.
    """
    row: Dict[str, Any] = {
        "asset": base_config.asset,
        "strategy": base_config.mode,
        "interval": base_config.interval,
        **combo,
        "error": None,
    }
    try:
        cfg = base_config.with_overrides(**combo)
        result = run_backtest(samples, cfg, initial_capital)
    except ValidationError as e:
        logger.error("Combination %s rejected: %s", combo, e)
        row["error"] = f"{type(e).__name__}: {e}"
        return row
    except Exception as e:
        logger.exception("Combination %s failed", combo)
        row["error"] = f"{type(e).__name__}: {e}"
        return row

    for key in RESULT_COLUMNS:
        if key not in row and key in result.summary:
            row[key] = result.summary[key]
    return row


# Samples shared with worker processes once, instead of once per task
_WORKER_SAMPLES: Sequence[MarketSample] = ()


def _init_worker(samples: Sequence[MarketSample]) -> None:
    global _WORKER_SAMPLES
    _WORKER_SAMPLES = samples


def _run_in_worker(args: Tuple[StrategyConfig, Dict[str, float], float]) -> Dict[str, Any]:
    base_config, combo, initial_capital = args
    return run_combination(_WORKER_SAMPLES, base_config, combo, initial_capital)


def run_sweep(
    samples: Sequence[MarketSample],
    base_config: StrategyConfig,
    grid: SweepGrid,
    initial_capital: float = DEFAULT_INITIAL_CAPITAL,
    max_workers: Optional[int] = None,
    parallel: bool = True,
    rank_by: str = "total_return",
) -> pd.DataFrame:
    combos = generate_combinations(grid)
    logger.info(
        "Sweeping %d combinations for %s %s (%s) over %d samples",
        len(combos), base_config.asset, base_config.interval,
        base_config.mode, len(samples),
    )
    if not combos:
        return pd.DataFrame(columns=RESULT_COLUMNS)

    samples = list(samples)
    if parallel and len(combos) > 1:
        tasks = [(base_config, c, initial_capital) for c in combos]
        with ProcessPoolExecutor(
            max_workers=max_workers,
            initializer=_init_worker,
            initargs=(samples,),
        ) as executor:
            rows = list(executor.map(_run_in_worker, tasks, chunksize=8))
    else:
        rows = [run_combination(samples, base_config, c, initial_capital) for c in combos]

    failed = sum(1 for r in rows if r.get("error"))
    if failed:
        logger.warning("%d of %d combinations failed", failed, len(rows))

    return rank_results(pd.DataFrame(rows, columns=RESULT_COLUMNS), by=rank_by)


def rank_results(df: pd.DataFrame, by: str = "total_return") -> pd.DataFrame:
    """Best first by `by`, ties broken by Sharpe; error rows last."""
    if df.empty:
        return df.reset_index(drop=True)
    secondary = "sharpe_ratio" if by != "sharpe_ratio" else "total_return"
    ok = df[df["error"].isna()]
    bad = df[df["error"].notna()]
    ranked = ok.sort_values(
        [by, secondary, "leverage", "low_threshold", "high_threshold"],
        ascending=[False, False, True, True, True],
        kind="mergesort",
    )
    return pd.concat([ranked, bad]).reset_index(drop=True)


# ---------------------------------------------------------------------------
# Rolling windows
# ---------------------------------------------------------------------------

def generate_rolling_windows(
    samples: Sequence[MarketSample],
    window_days: int,
) -> List[Dict[str, Any]]:
    """
    Windows of `window_days` starting on each day from the first sample.
    Windows with fewer than two samples are skipped.
    """
    if not samples:
        return []

    first = samples[0].timestamp
    last = samples[-1].timestamp
    total_span_days = (last - first) // timedelta(days=1) + 1
    total_windows = max(0, total_span_days - window_days + 1)

    windows: List[Dict[str, Any]] = []
    start_idx = 0
    end_idx = 0
    for w in range(total_windows):
        window_start = first + timedelta(days=w)
        window_end = window_start + timedelta(days=window_days)

        while start_idx < len(samples) and samples[start_idx].timestamp < window_start:
            start_idx += 1
        if start_idx >= len(samples):
            break
        end_idx = max(end_idx, start_idx)
        while end_idx < len(samples) and samples[end_idx].timestamp < window_end:
            end_idx += 1

        chunk = samples[start_idx:end_idx]
        if len(chunk) < 2:
            continue
        windows.append({
            "index": w,
            "start": chunk[0].timestamp.isoformat(),
            "end": chunk[-1].timestamp.isoformat(),
            "samples": chunk,
        })
    return windows


def run_rolling_sweep(
    samples: Sequence[MarketSample],
    base_config: StrategyConfig,
    grid: SweepGrid,
    window_days: int,
    initial_capital: float = DEFAULT_INITIAL_CAPITAL,
    max_workers: Optional[int] = None,
    parallel: bool = True,
) -> pd.DataFrame:
    frames = []
    windows = generate_rolling_windows(samples, window_days)
    logger.info("Rolling sweep: %d windows of %d days", len(windows), window_days)
    for window in windows:
        df = run_sweep(
            window["samples"], base_config, grid, initial_capital,
            max_workers=max_workers, parallel=parallel,
        )
        df.insert(0, "window_index", window["index"])
        df.insert(1, "window_start", window["start"])
        df.insert(2, "window_end", window["end"])
        df.insert(3, "sample_count", len(window["samples"]))
        frames.append(df)
    if not frames:
        return pd.DataFrame(
            columns=["window_index", "window_start", "window_end", "sample_count"] + RESULT_COLUMNS)
    return pd.concat(frames, ignore_index=True)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _parse_range(text: str) -> Range:
    parts = [float(p) for p in text.split(":")]
    if len(parts) == 1:
        return (parts[0], parts[0], 1)
    if len(parts) == 2:
        return (parts[0], parts[1], 5)
    return (parts[0], parts[1], parts[2])


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Sweep leverage x threshold combinations over historical sentiment data."
    )
    p.add_argument("--asset", default="ETH")
    p.add_argument("--timeframe", default="1h", help="15min | 1h | 4h | 24h")
    p.add_argument("--strategy", default="momentum", choices=["momentum", "contrarian"])
    p.add_argument(
        "--leverage",
        default="1,2,3,4,5,6,8,10,12",
        help="Comma separated leverage levels, e.g. 1,2,3x",
    )
    p.add_argument("--short", default="20:50:5", help="low threshold range start:end:step")
    p.add_argument("--long", default="50:80:5", help="high threshold range start:end:step")
    p.add_argument("--extreme-low", default="0", help="contrarian override range start:end:step")
    p.add_argument("--extreme-high", default="100", help="contrarian override range start:end:step")
    p.add_argument("--samples", help="Local samples file (.json/.csv). Fetched from the feed if omitted.")
    p.add_argument("--days", type=int, default=365, help="Days of history to test.")
    p.add_argument("--rolling-days", type=int, help="Also run rolling windows of this many days.")
    p.add_argument("--capital", type=float, default=DEFAULT_INITIAL_CAPITAL)
    p.add_argument("--workers", type=int, default=4)
    p.add_argument("--no-parallel", action="store_true")
    p.add_argument("--db", default="backtest-results/all-backtests.db")
    p.add_argument("--top", type=int, default=10)
    p.add_argument("--log-level", default="INFO")
    return p.parse_args()


def main() -> None:
    from data.backtests.store import BacktestResultStore
    from data.sentiment.load_samples import load_samples, trim_to_days
    from data.sentiment.client import SentimentFeed

    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    base = StrategyConfig.from_dict({
        "asset": args.asset,
        "interval": args.timeframe,
        "mode": args.strategy,
        "low_threshold": 0,
        "high_threshold": 100,
    })

    if args.samples:
        samples = load_samples(Path(args.samples))
    else:
        samples = SentimentFeed(asset=base.asset, interval=base.interval).fetch_history()
    samples = trim_to_days(samples, args.days)

    grid = SweepGrid.from_ranges(
        [float(x.strip().rstrip("xX")) for x in args.leverage.split(",") if x.strip()],
        _parse_range(args.short),
        _parse_range(args.long),
        _parse_range(args.extreme_low),
        _parse_range(args.extreme_high),
    )

    store = BacktestResultStore(args.db)
    df = run_sweep(
        samples, base, grid, args.capital,
        max_workers=args.workers, parallel=not args.no_parallel,
    )
    run_id = store.save_sweep(df)
    logger.info("Stored %d rows under run %s in %s", len(df), run_id, args.db)

    if args.rolling_days:
        rolling = run_rolling_sweep(
            samples, base, grid, args.rolling_days, args.capital,
            max_workers=args.workers, parallel=not args.no_parallel,
        )
        store.save_rolling(rolling, run_id=run_id, window_days=args.rolling_days)
        logger.info("Stored %d rolling rows", len(rolling))

    cols = ["leverage", "low_threshold", "high_threshold", "total_return_pct",
            "sharpe_ratio", "max_drawdown_pct", "num_trades", "win_rate", "liquidations"]
    print(df[cols].head(args.top).to_string(index=False))


if __name__ == "__main__":
    main()
