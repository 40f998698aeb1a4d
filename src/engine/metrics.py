from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Sequence

import numpy as np

from .intervals import periods_per_year
from .models import TradeRecord

CLOSING_ACTIONS = ("CLOSE", "LIQUIDATION")


def compute_metrics(
    trades: Sequence[TradeRecord],
    equity_curve: Sequence[Dict[str, Any]],
    initial_capital: float,
    interval: str = "4h",
    total_funding: float = 0.0,
) -> Dict[str, Any]:
    """
    Recompute the whole performance summary from the trade log and the
    per-sample mark-to-market equity curve. Nothing here is incremental.
    """
    if not equity_curve:
        return _empty_summary(initial_capital, len(trades), total_funding)

    equities = [float(p["equity"]) for p in equity_curve]
    final = equities[-1]
    total_return = final - initial_capital
    total_return_pct = (total_return / initial_capital * 100.0) if initial_capital else 0.0

    period_returns = _period_returns([initial_capital] + equities)
    sharpe, volatility = _sharpe(period_returns, periods_per_year(interval))

    # Round trips (open -> close / liquidation)
    closing = [t for t in trades if t.action in CLOSING_ACTIONS]
    wins = [t for t in closing if t.pnl > 0]
    trade_returns = [t.pnl / t.size for t in closing if t.size > 0]
    liquidations = sum(1 for t in closing if t.action == "LIQUIDATION")

    n_samples = len(equity_curve)
    side_counts = {"LONG": 0, "SHORT": 0, "NONE": 0}
    for point in equity_curve:
        side = point.get("side", "NONE")
        side_counts[side] = side_counts.get(side, 0) + 1

    return {
        "initial_capital": initial_capital,
        "final_equity": final,
        "total_return": total_return,
        "total_return_pct": total_return_pct,
        "sharpe_ratio": sharpe,
        "volatility_pct": volatility * 100.0,
        "max_drawdown_pct": _max_drawdown([initial_capital] + equities) * 100.0,
        "num_trades": len(trades),
        "num_round_trips": len(closing),
        "win_rate": (len(wins) / len(closing) * 100.0) if closing else 0.0,
        "avg_trade_return_pct": (sum(trade_returns) / len(trade_returns) * 100.0) if trade_returns else 0.0,
        "best_trade_pct": max(trade_returns) * 100.0 if trade_returns else 0.0,
        "worst_trade_pct": min(trade_returns) * 100.0 if trade_returns else 0.0,
        "liquidations": liquidations,
        "total_fees": sum(t.fees for t in trades),
        "total_funding": total_funding,
        "time_in_long_pct": side_counts["LONG"] / n_samples * 100.0,
        "time_in_short_pct": side_counts["SHORT"] / n_samples * 100.0,
        "time_in_neutral_pct": side_counts["NONE"] / n_samples * 100.0,
        "time_in_market_pct": (side_counts["LONG"] + side_counts["SHORT"]) / n_samples * 100.0,
        "num_samples": n_samples,
    }


def _empty_summary(initial_capital: float, num_trades: int, total_funding: float) -> Dict[str, Any]:
    return {
        "initial_capital": initial_capital,
        "final_equity": initial_capital,
        "total_return": 0.0,
        "total_return_pct": 0.0,
        "sharpe_ratio": 0.0,
        "volatility_pct": 0.0,
        "max_drawdown_pct": 0.0,
        "num_trades": num_trades,
        "num_round_trips": 0,
        "win_rate": 0.0,
        "avg_trade_return_pct": 0.0,
        "best_trade_pct": 0.0,
        "worst_trade_pct": 0.0,
        "liquidations": 0,
        "total_fees": 0.0,
        "total_funding": total_funding,
        "time_in_long_pct": 0.0,
        "time_in_short_pct": 0.0,
        "time_in_neutral_pct": 0.0,
        "time_in_market_pct": 0.0,
        "num_samples": 0,
    }


def _period_returns(equities: Iterable[float]) -> List[float]:
    values = list(equities)
    out = []
    for prev, curr in zip(values, values[1:]):
        if prev <= 0:
            continue
        out.append(curr / prev - 1.0)
    return out


def _sharpe(returns: Sequence[float], annualization: float):
    """Annualized mean/stdev of per-period returns; 0 when flat."""
    if not returns:
        return 0.0, 0.0
    arr = np.asarray(returns, dtype=float)
    std = float(np.std(arr))
    if std == 0.0 or math.isnan(std):
        return 0.0, 0.0
    return float(np.mean(arr)) / std * math.sqrt(annualization), std


def _max_drawdown(values):
    """Largest peak-to-trough fall as a fraction of the peak."""
    peak = values[0]
    max_dd = 0.0
    for v in values:
        peak = max(peak, v)
        if peak > 0:
            max_dd = max(max_dd, (peak - v) / peak)
    return max_dd
