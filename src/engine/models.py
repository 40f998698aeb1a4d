from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Side(str, Enum):
    NONE = "NONE"
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        if self is Side.LONG:
            return 1
        if self is Side.SHORT:
            return -1
        return 0


@dataclass(frozen=True)
class MarketSample:
    timestamp: datetime          # tz-aware UTC
    price: float
    raw_signal: float
    smoothed_signal: Optional[float] = None

    @property
    def signal(self) -> float:
        """Smoothed signal when available, otherwise the raw reading."""
        if self.smoothed_signal is None:
            return self.raw_signal
        return self.smoothed_signal


@dataclass
class Position:
    side: Side = Side.NONE
    size: float = 0.0                # quote-currency margin (notional after open fee)
    entry_price: float = 0.0
    leverage: float = 1.0
    entry_timestamp: Optional[str] = None
    unrealized_pnl: float = 0.0
    accrued_funding: float = 0.0     # positive = paid, negative = received
    open_fee: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.side is not Side.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side.value,
            "size": self.size,
            "entryPrice": self.entry_price,
            "leverage": self.leverage,
            "entryTimestamp": self.entry_timestamp,
            "unrealizedPnL": self.unrealized_pnl,
            "accruedFunding": self.accrued_funding,
            "openFee": self.open_fee,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "Position":
        if not raw:
            return cls()
        side = Side(raw.get("side") or "NONE")
        size = float(raw.get("size") or 0.0)
        if side is Side.NONE or size <= 0.0:
            return cls()
        return cls(
            side=side,
            size=size,
            entry_price=float(raw.get("entryPrice") or 0.0),
            leverage=float(raw.get("leverage") or 1.0),
            entry_timestamp=raw.get("entryTimestamp"),
            unrealized_pnl=float(raw.get("unrealizedPnL") or 0.0),
            accrued_funding=float(raw.get("accruedFunding") or 0.0),
            open_fee=float(raw.get("openFee") or 0.0),
        )


@dataclass(frozen=True)
class TradeRecord:
    timestamp: str
    action: str          # "OPEN_LONG" | "OPEN_SHORT" | "CLOSE" | "LIQUIDATION"
    price: float
    signal: float
    size: float
    pnl: float
    fees: float
    balance_after: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "price": self.price,
            "signal": self.signal,
            "size": self.size,
            "pnl": self.pnl,
            "fees": self.fees,
            "balance_after": self.balance_after,
        }


@dataclass
class BacktestResult:
    summary: Dict[str, Any]
    trades: List[TradeRecord]
    # [{"timestamp":..., "price":..., "equity":..., "side":...}]
    equity_curve: List[Dict[str, Any]] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
