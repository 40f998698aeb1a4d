from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from strategies.smoothing import SignalSmoother
from strategies.strategy import decide

from .config import StrategyConfig
from .execution import apply_decision
from .metrics import compute_metrics
from .models import BacktestResult, MarketSample
from .portfolio import DEFAULT_INITIAL_CAPITAL, PositionLedger

logger = logging.getLogger(__name__)


def run_backtest(
    samples: Sequence[MarketSample],
    config: StrategyConfig,
    initial_capital: float = DEFAULT_INITIAL_CAPITAL,
    close_at_end: bool = True,
) -> BacktestResult:
    """
    Replay one ordered sample stream through smoother -> decide -> ledger
    for one config. Deterministic: the same (samples, config) always gives
    the same trades and summary.

    Per sample: mark-to-market, liquidation check, decision, transitions,
    equity/peak update. Stops early once cash is gone.
    """
    config.validate()
    ledger = PositionLedger(config, initial_capital)
    smoother = SignalSmoother(config.smoothing_window)
    equity_curve: List[Dict[str, Any]] = []

    override_active = False
    override_activations = 0
    stopped_early = False
    last_ts = None

    for sample in samples:
        if last_ts is not None and sample.timestamp <= last_ts:
            raise ValueError(
                f"samples must be strictly increasing: {sample.timestamp} after {last_ts}"
            )
        last_ts = sample.timestamp

        ts = sample.timestamp.isoformat()
        signal = smoother.update(sample.raw_signal)

        if ledger.position.is_open:
            ledger.mark_to_market(sample.price)
            ledger.check_liquidation(ts, sample.price, signal)

        if ledger.cash_balance <= 0.0:
            equity_curve.append(_equity_point(ts, sample.price, signal, ledger))
            logger.info("%s account depleted (cash %.2f); stopping run",
                        ts, ledger.cash_balance)
            stopped_early = True
            break

        decision = decide(signal, config)
        if decision.override and not override_active:
            override_activations += 1
        override_active = decision.override

        apply_decision(decision, sample, ledger)

        ledger.update_peak()
        equity_curve.append(_equity_point(ts, sample.price, signal, ledger))

    if close_at_end and ledger.position.is_open and samples:
        last = samples[-1]
        ledger.close(last.price, last.timestamp.isoformat(),
                     equity_curve[-1]["signal"] if equity_curve else last.raw_signal)
        equity_curve[-1]["equity"] = ledger.equity()

    summary = compute_metrics(
        ledger.trade_log,
        equity_curve,
        initial_capital,
        interval=config.interval,
        total_funding=ledger.total_funding_paid,
    )
    summary["override_activations"] = override_activations
    summary["stopped_early"] = stopped_early
    summary["peak_equity"] = ledger.peak_equity

    return BacktestResult(
        summary=summary,
        trades=list(ledger.trade_log),
        equity_curve=equity_curve,
        config=config.to_dict(),
    )


def _equity_point(ts: str, price: float, signal: float, ledger: PositionLedger) -> Dict[str, Any]:
    return {
        "timestamp": ts,
        "price": price,
        "equity": ledger.equity(),
        "peak_equity": ledger.peak_equity,
        "side": ledger.side.value,
        "size": ledger.position.size,
        "signal": signal,
    }
