from __future__ import annotations

from dataclasses import dataclass

from engine.config import StrategyConfig
from engine.models import Side

HOLD = "hold"
OPEN = "open"
FLIP = "flip"


@dataclass(frozen=True)
class Decision:
    target_side: Side
    should_trade: bool
    reason: str
    signal: float
    override: bool = False   # contrarian run switched to momentum by an extreme reading


def _momentum_target(signal: float, cfg: StrategyConfig) -> Side:
    if signal <= cfg.low_threshold:
        return Side.SHORT
    if signal >= cfg.high_threshold:
        return Side.LONG
    return Side.NONE


def _contrarian_target(signal: float, cfg: StrategyConfig) -> Side:
    if signal <= cfg.low_threshold:
        return Side.LONG
    if signal >= cfg.high_threshold:
        return Side.SHORT
    return Side.NONE


def extreme_override_active(signal: float, cfg: StrategyConfig) -> bool:
    """
    In contrarian mode an extreme reading hands control back to momentum.
    The bounds are disabled at their defaults (0 and 100).
    """
    if cfg.mode != "contrarian":
        return False
    use_low = 0.0 < cfg.extreme_low_threshold <= cfg.low_threshold
    use_high = cfg.high_threshold <= cfg.extreme_high_threshold < 100.0
    return (
        (use_low and signal <= cfg.extreme_low_threshold)
        or (use_high and signal >= cfg.extreme_high_threshold)
    )


def decide(signal: float, cfg: StrategyConfig) -> Decision:
    """
    Map a (smoothed) signal to a target side. Pure: the same inputs always
    give the same Decision, which backtest/live parity depends on.
    """
    override = extreme_override_active(signal, cfg)
    mode = "momentum" if override else cfg.mode

    if mode == "momentum":
        target = _momentum_target(signal, cfg)
    else:
        target = _contrarian_target(signal, cfg)

    label = classify_signal(signal)
    tag = f" ({mode}{', extreme override' if override else ''})"
    if target is Side.NONE:
        reason = (
            f"signal {signal:.2f} in neutral zone "
            f"({cfg.low_threshold:g}-{cfg.high_threshold:g}) -> hold"
        )
    elif signal <= cfg.low_threshold:
        reason = f"signal {signal:.2f} <= {cfg.low_threshold:g} ({label}) -> {target.value}{tag}"
    else:
        reason = f"signal {signal:.2f} >= {cfg.high_threshold:g} ({label}) -> {target.value}{tag}"

    return Decision(
        target_side=target,
        should_trade=target is not Side.NONE,
        reason=reason,
        signal=signal,
        override=override,
    )


def plan_transition(current: Side, decision: Decision) -> str:
    """
    What to do with the current side given a decision. A NONE target keeps
    whatever is open.
    """
    if not decision.should_trade or decision.target_side is current:
        return HOLD
    if current is Side.NONE:
        return OPEN
    return FLIP


def classify_signal(value: float) -> str:
    if value <= 25:
        return "Extreme Fear"
    if value <= 45:
        return "Fear"
    if value <= 55:
        return "Neutral"
    if value <= 75:
        return "Greed"
    return "Extreme Greed"


def format_decision(decision: Decision, cfg: StrategyConfig) -> str:
    text = f"[{cfg.mode.upper()}] {cfg.asset}: {decision.reason}"
    if decision.should_trade:
        text += f" | Leverage: {cfg.leverage:g}x"
    return text


def describe_strategy(cfg: StrategyConfig) -> str:
    if cfg.mode == "momentum":
        return (
            f"Momentum strategy: {cfg.asset} {cfg.leverage:g}x "
            f"- SHORT when signal <= {cfg.low_threshold:g}, "
            f"LONG when signal >= {cfg.high_threshold:g}"
        )
    return (
        f"Contrarian strategy: {cfg.asset} {cfg.leverage:g}x "
        f"- LONG when signal <= {cfg.low_threshold:g}, "
        f"SHORT when signal >= {cfg.high_threshold:g}"
    )
