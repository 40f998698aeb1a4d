from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .config import StrategyConfig
from .errors import InsufficientFunds, InvalidState
from .execution import calc_fee
from .models import Position, Side, TradeRecord

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_CAPITAL = 10_000.0
# absorbs float rounding when a move lands exactly on the liquidation boundary
LIQUIDATION_TOLERANCE = 1e-9


class PositionLedger:
    """
    Owns one account's cash and its single position, and applies the
    financial model: leveraged PnL, per-period funding, fees, liquidation.

    `position.size` is the quote-currency margin committed to the trade
    (notional minus the opening fee). PnL is size * leverage * price return.
    Cash only moves on fees, closes and liquidations; open positions show up
    in `equity()`.
    """

    def __init__(
        self,
        config: StrategyConfig,
        initial_capital: float = DEFAULT_INITIAL_CAPITAL,
    ):
        self.config = config
        self.initial_capital = float(initial_capital)
        self.cash_balance: float = float(initial_capital)
        self.realized_pnl: float = 0.0
        self.total_fees_paid: float = 0.0
        self.total_funding_paid: float = 0.0
        self.peak_equity: float = float(initial_capital)
        self.liquidations: int = 0
        self.position: Position = Position()
        self.trade_log: List[TradeRecord] = []

    # -------------------------
    # Views
    # -------------------------

    @property
    def side(self) -> Side:
        return self.position.side

    def equity(self) -> float:
        pos = self.position
        if not pos.is_open:
            return self.cash_balance
        return self.cash_balance + pos.unrealized_pnl - pos.accrued_funding

    def update_peak(self) -> float:
        """Fold current equity into the peak; returns current equity."""
        eq = self.equity()
        if eq > self.peak_equity:
            self.peak_equity = eq
        return eq

    def loss_fraction(self) -> float:
        """
        Share of margin lost. Funding paid adds to the loss; funding
        received (SHORT) never offsets a price loss.
        """
        pos = self.position
        if not pos.is_open or pos.size <= 0:
            return 0.0
        return (max(pos.accrued_funding, 0.0) - pos.unrealized_pnl) / pos.size

    def position_notional(self) -> float:
        return self.cash_balance * self.config.max_position_ratio

    def get_portfolio_view(self) -> Dict[str, Any]:
        """
        Snapshot used for logs and the durable state file.
        {
            "cash": float,
            "equity": float,
            "peakEquity": float,
            "realizedPnL": float,
            "totalFeesPaid": float,
            "totalFundingPaid": float,
            "position": {...Position.to_dict()},
        }
        """
        return {
            "cash": self.cash_balance,
            "equity": self.equity(),
            "peakEquity": self.peak_equity,
            "realizedPnL": self.realized_pnl,
            "totalFeesPaid": self.total_fees_paid,
            "totalFundingPaid": self.total_funding_paid,
            "position": self.position.to_dict(),
        }

    def restore(self, view: Dict[str, Any]) -> None:
        self.cash_balance = float(view.get("cash", self.cash_balance))
        self.peak_equity = max(
            self.peak_equity, float(view.get("peakEquity", self.peak_equity)))
        self.realized_pnl = float(view.get("realizedPnL", self.realized_pnl))
        self.total_fees_paid = float(
            view.get("totalFeesPaid", self.total_fees_paid))
        self.total_funding_paid = float(
            view.get("totalFundingPaid", self.total_funding_paid))
        self.position = Position.from_dict(view.get("position"))

    def set_config(self, config: StrategyConfig) -> None:
        """Swap the config snapshot. Only called between cycles."""
        self.config = config

    # -------------------------
    # State transitions
    # -------------------------

    def ensure_can_open(self, notional: float) -> float:
        """Raises InsufficientFunds without touching state; returns the open fee."""
        if notional <= 0.0 or notional > self.cash_balance:
            raise InsufficientFunds(
                f"cannot open notional {notional:.2f} with cash {self.cash_balance:.2f}"
            )
        fee = calc_fee(notional, self.config.fee_rate)
        if self.cash_balance - fee < self.config.min_open_balance:
            raise InsufficientFunds(
                f"cash {self.cash_balance - fee:.2f} after fee is below "
                f"minimum {self.config.min_open_balance:.2f}"
            )
        return fee

    def open(
        self,
        side: Side,
        notional: float,
        price: float,
        leverage: Optional[float] = None,
        ts: Optional[str] = None,
        signal: float = 0.0,
    ) -> TradeRecord:
        if self.position.is_open:
            raise InvalidState(
                f"cannot open {side.value}: {self.position.side.value} already open")
        if side is Side.NONE:
            raise InvalidState("cannot open a NONE position")
        if price is None or price <= 0.0:
            raise ValueError(f"invalid open price {price!r}")

        fee = self.ensure_can_open(notional)
        lev = self.config.leverage if leverage is None else float(leverage)

        self.cash_balance -= fee
        self.total_fees_paid += fee
        self.position = Position(
            side=side,
            size=notional - fee,
            entry_price=price,
            leverage=lev,
            entry_timestamp=ts,
            open_fee=fee,
        )

        record = TradeRecord(
            timestamp=ts or "",
            action=f"OPEN_{side.value}",
            price=price,
            signal=signal,
            size=self.position.size,
            pnl=0.0,  # realized at close
            fees=fee,
            balance_after=self.cash_balance,
        )
        self.trade_log.append(record)
        return record

    def mark_to_market(self, price: float) -> float:
        """
        Revalue at `price` and accrue one funding period. Returns the signed
        funding amount (positive = paid by us).
        """
        pos = self.position
        if not pos.is_open:
            return 0.0

        self._revalue(price)
        funding = (
            pos.size * pos.leverage * self.config.funding_rate_per_period * pos.side.sign
        )
        pos.accrued_funding += funding
        self.total_funding_paid += funding
        return funding

    def check_liquidation(
        self,
        ts: Optional[str] = None,
        price: float = 0.0,
        signal: float = 0.0,
    ) -> Optional[TradeRecord]:
        pos = self.position
        if not pos.is_open:
            return None
        if self.loss_fraction() < self.config.liquidation_loss_fraction - LIQUIDATION_TOLERANCE:
            return None

        penalty = pos.size * self.config.liquidation_penalty_fraction
        self.cash_balance -= penalty
        pnl = -(penalty + pos.open_fee)
        self.realized_pnl += pnl
        self.liquidations += 1

        record = TradeRecord(
            timestamp=ts or "",
            action="LIQUIDATION",
            price=price,
            signal=signal,
            size=pos.size,
            pnl=pnl,
            fees=0.0,
            balance_after=self.cash_balance,
        )
        self.trade_log.append(record)
        logger.warning(
            "Liquidated %s %.2f @ %.2f (entry %.2f, loss fraction %.3f); balance %.2f",
            pos.side.value, pos.size, price, pos.entry_price,
            self.loss_fraction(), self.cash_balance,
        )
        self.position = Position()
        return record

    def close(
        self,
        price: float,
        ts: Optional[str] = None,
        signal: float = 0.0,
    ) -> TradeRecord:
        pos = self.position
        if not pos.is_open:
            raise InvalidState("no open position to close")

        self._revalue(price)
        close_fee = calc_fee(pos.size, self.config.fee_rate)
        settled = pos.unrealized_pnl - pos.accrued_funding - close_fee

        self.cash_balance += settled
        self.total_fees_paid += close_fee
        # round-trip PnL: the open fee left cash when the position was opened
        pnl = settled - pos.open_fee
        self.realized_pnl += pnl

        record = TradeRecord(
            timestamp=ts or "",
            action="CLOSE",
            price=price,
            signal=signal,
            size=pos.size,
            pnl=pnl,
            fees=close_fee,
            balance_after=self.cash_balance,
        )
        self.trade_log.append(record)
        self.position = Position()
        return record

    def flip(
        self,
        new_side: Side,
        price: float,
        ts: Optional[str] = None,
        signal: float = 0.0,
    ) -> Tuple[TradeRecord, Optional[TradeRecord]]:
        """
        Close, then open `new_side` sized from the post-close cash. The
        opening leg is skipped (None) when funds are insufficient.
        """
        if not self.position.is_open:
            raise InvalidState("flip requires an open position")
        if new_side in (Side.NONE, self.position.side):
            raise InvalidState(
                f"cannot flip {self.position.side.value} to {new_side.value}")

        closed = self.close(price, ts, signal)
        try:
            opened = self.open(new_side, self.position_notional(), price, ts=ts, signal=signal)
        except InsufficientFunds as e:
            logger.info("Flip to %s skipped opening leg: %s", new_side.value, e)
            opened = None
        return closed, opened

    def sync_position(
        self,
        side: Side,
        base_size: float,
        entry_price: float,
        mark_price: float,
        leverage: Optional[float] = None,
    ) -> bool:
        """
        Overwrite the local position with what the exchange reports.
        Returns True when the local view changed side.
        """
        local = self.position
        lev = self.config.leverage if leverage is None else float(leverage)

        if side is Side.NONE or base_size <= 0.0:
            changed = local.is_open
            if changed:
                logger.warning(
                    "Exchange reports no position; dropping local %s %.2f",
                    local.side.value, local.size,
                )
            self.position = Position()
            return changed

        changed = local.side is not side
        if changed:
            logger.warning(
                "Exchange reports %s, local state had %s; adopting exchange view",
                side.value, local.side.value,
            )

        entry = entry_price if entry_price > 0 else mark_price
        self.position = Position(
            side=side,
            size=base_size * entry / lev,
            entry_price=entry,
            leverage=lev,
            entry_timestamp=local.entry_timestamp if not changed else None,
            accrued_funding=local.accrued_funding if not changed else 0.0,
            open_fee=local.open_fee if not changed else 0.0,
        )
        if mark_price > 0:
            self._revalue(mark_price)
        return changed

    def set_cash(self, cash: float) -> None:
        self.cash_balance = float(cash)

    # -------------------------
    # Internal helpers
    # -------------------------

    def _revalue(self, price: float) -> None:
        pos = self.position
        if price is None or price <= 0.0 or pos.entry_price <= 0.0:
            return
        price_return = (price - pos.entry_price) / pos.entry_price * pos.side.sign
        pos.unrealized_pnl = pos.size * pos.leverage * price_return
