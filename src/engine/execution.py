from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List

from strategies.strategy import FLIP, HOLD, OPEN, Decision, plan_transition

from .errors import InsufficientFunds
from .models import MarketSample, TradeRecord

if TYPE_CHECKING:
    from .portfolio import PositionLedger

logger = logging.getLogger(__name__)


def calc_fee(amount: float, fee_rate: float) -> float:
    """Flat platform fee on a quote-currency amount."""
    if amount <= 0.0 or fee_rate <= 0.0:
        return 0.0
    return amount * fee_rate


def apply_decision(
    decision: Decision,
    sample: MarketSample,
    ledger: "PositionLedger",
) -> List[TradeRecord]:
    """
    Apply one decision to the ledger at the sample's price: flip when the
    target is the opposite side, open when flat, hold otherwise.
    """
    action = plan_transition(ledger.side, decision)
    if action == HOLD:
        return []

    ts = sample.timestamp.isoformat()
    price = sample.price
    signal = decision.signal
    records: List[TradeRecord] = []

    if action == FLIP:
        closed, opened = ledger.flip(decision.target_side, price, ts, signal)
        records.append(closed)
        if opened is not None:
            records.append(opened)
        logger.debug(
            "%s flip -> %s @ %.2f signal %.2f pnl %.2f",
            ts, decision.target_side.value, price, signal, closed.pnl,
        )
        return records

    if action == OPEN:
        try:
            records.append(
                ledger.open(
                    decision.target_side,
                    ledger.position_notional(),
                    price,
                    ts=ts,
                    signal=signal,
                )
            )
        except InsufficientFunds as e:
            logger.debug("%s open %s skipped: %s",
                         ts, decision.target_side.value, e)
    return records
