from __future__ import annotations

import abc
import itertools
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Type

from engine.errors import InvalidState, SettlementError, ValidationError
from engine.models import Side

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExchangePosition:
    exists: bool
    side: Side = Side.NONE
    size: float = 0.0           # base units
    entry_price: float = 0.0
    mark_price: float = 0.0

    @classmethod
    def flat(cls, mark_price: float = 0.0) -> "ExchangePosition":
        return cls(exists=False, mark_price=mark_price)


@dataclass(frozen=True)
class Collateral:
    total: float
    free: float


class ExchangeGateway(abc.ABC):
    """
    Venue capability set used by the live loop. `size` arguments are the
    leveraged quote-currency exposure (margin * leverage); positions come
    back in base units.
    """

    name = "abstract"

    @abc.abstractmethod
    async def initialize(self) -> None: ...

    @abc.abstractmethod
    async def get_position(self, asset: str) -> ExchangePosition: ...

    @abc.abstractmethod
    async def get_collateral(self) -> Collateral: ...

    @abc.abstractmethod
    async def open_position(self, asset: str, side: Side, size: float) -> str: ...

    @abc.abstractmethod
    async def close_position(self, asset: str) -> str: ...

    @abc.abstractmethod
    async def settle_pnl(self, asset: str) -> Optional[str]: ...

    async def execute_position(self, asset: str, side: Side, size: float) -> Optional[str]:
        """Bring the venue to `side`: no-op if already there, else close then open."""
        current = await self.get_position(asset)
        if current.exists and current.side is side:
            return None
        if current.exists:
            await self.close_position(asset)
        return await self.open_position(asset, side, size)

    def observe_price(self, asset: str, price: float) -> None:
        """Reference price hint from the feed. Real venues price their own fills."""

    @abc.abstractmethod
    async def shutdown(self) -> None: ...


class PaperGateway(ExchangeGateway):
    """
    In-process venue that fills market orders at the last observed
    reference price and charges the same fee model as the ledger
    (fee_rate on margin).

    `fail_next(method, exc)` queues an exception for the next call of
    `method`, for exercising the loop's error paths.
    """

    name = "paper"

    def __init__(
        self,
        initial_collateral: float = 10_000.0,
        leverage: float = 4.0,
        fee_rate: float = 0.001,
        price: float = 0.0,
    ):
        self.collateral = float(initial_collateral)
        self.leverage = float(leverage)
        self.fee_rate = float(fee_rate)
        self._prices: Dict[str, float] = defaultdict(lambda: float(price))
        self._positions: Dict[str, ExchangePosition] = {}
        self._unsettled: Dict[str, float] = {}
        self._failures: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self._tx = itertools.count(1)
        self.orders: list[Dict[str, Any]] = []
        self.initialized = False
        self.closed = False

    # -------------------------
    # Test hooks
    # -------------------------

    def fail_next(self, method: str, exc: BaseException) -> None:
        self._failures[method].append(exc)

    def set_position(self, asset: str, position: ExchangePosition) -> None:
        self._positions[asset.upper()] = position

    def _maybe_fail(self, method: str) -> None:
        queue = self._failures.get(method)
        if queue:
            raise queue.popleft()

    def _next_tx(self) -> str:
        return f"paper-{next(self._tx)}"

    # -------------------------
    # Capability set
    # -------------------------

    def observe_price(self, asset: str, price: float) -> None:
        if price > 0:
            self._prices[asset.upper()] = float(price)

    async def initialize(self) -> None:
        self._maybe_fail("initialize")
        self.initialized = True
        logger.info("Paper gateway ready with collateral %.2f", self.collateral)

    async def get_position(self, asset: str) -> ExchangePosition:
        self._maybe_fail("get_position")
        asset = asset.upper()
        pos = self._positions.get(asset)
        mark = self._prices[asset]
        if pos is None or not pos.exists:
            return ExchangePosition.flat(mark)
        return ExchangePosition(True, pos.side, pos.size, pos.entry_price, mark)

    async def get_collateral(self) -> Collateral:
        self._maybe_fail("get_collateral")
        unrealized = 0.0
        margin = 0.0
        for asset, pos in self._positions.items():
            if not pos.exists:
                continue
            mark = self._prices[asset]
            unrealized += pos.size * (mark - pos.entry_price) * pos.side.sign
            margin += pos.size * pos.entry_price / self.leverage
        return Collateral(total=self.collateral + unrealized, free=self.collateral - margin)

    async def open_position(self, asset: str, side: Side, size: float) -> str:
        self._maybe_fail("open_position")
        asset = asset.upper()
        if side is Side.NONE:
            raise ValidationError("cannot open a NONE position")
        if asset in self._positions and self._positions[asset].exists:
            raise InvalidState(f"{asset} position already open")
        price = self._prices[asset]
        if price <= 0:
            raise InvalidState(f"no reference price for {asset}")

        fee = size / self.leverage * self.fee_rate
        self.collateral -= fee
        self._positions[asset] = ExchangePosition(True, side, size / price, price, price)
        tx = self._next_tx()
        self.orders.append({"tx": tx, "type": "open", "asset": asset, "side": side.value,
                            "size": size, "price": price, "fee": fee})
        return tx

    async def close_position(self, asset: str) -> str:
        self._maybe_fail("close_position")
        asset = asset.upper()
        pos = self._positions.get(asset)
        if pos is None or not pos.exists:
            return ""
        price = self._prices[asset]
        pnl = pos.size * (price - pos.entry_price) * pos.side.sign
        fee = pos.size * pos.entry_price / self.leverage * self.fee_rate
        self.collateral -= fee
        self._unsettled[asset] = self._unsettled.get(asset, 0.0) + pnl
        self._positions.pop(asset)
        tx = self._next_tx()
        self.orders.append({"tx": tx, "type": "close", "asset": asset, "side": pos.side.value,
                            "size": pos.size, "price": price, "fee": fee})
        return tx

    async def settle_pnl(self, asset: str) -> Optional[str]:
        self._maybe_fail("settle_pnl")
        asset = asset.upper()
        pnl = self._unsettled.pop(asset, None)
        if pnl is None:
            raise SettlementError("no pnl to settle", code="NO_PNL")
        self.collateral += pnl
        return self._next_tx()

    async def shutdown(self) -> None:
        self.closed = True


GATEWAYS: Dict[str, Type[ExchangeGateway]] = {
    "paper": PaperGateway,
}


def create_gateway(name: str, **kwargs: Any) -> ExchangeGateway:
    try:
        cls = GATEWAYS[name.lower()]
    except KeyError:
        raise ValidationError(
            f"Unknown venue {name!r}; available: {sorted(GATEWAYS)}"
        ) from None
    return cls(**kwargs)
