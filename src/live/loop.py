from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence

from engine.config import ConfigStore, StrategyConfig
from engine.errors import FatalExecutionError, InsufficientFunds, TransientNetworkError
from engine.intervals import next_candle_boundary
from engine.metrics import compute_metrics
from engine.models import MarketSample, Side, TradeRecord
from engine.portfolio import DEFAULT_INITIAL_CAPITAL, PositionLedger
from strategies.smoothing import SignalSmoother
from strategies.strategy import FLIP, HOLD, Decision, decide, format_decision, plan_transition

from .gateway import ExchangeGateway
from .retry import OrderThrottle, is_benign_settle_error, submit_with_retry
from .state_store import LiveState, StateStore

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "IDLE"
    AWAITING_CANDLE = "AWAITING_CANDLE"
    RECONCILING = "RECONCILING"
    DECIDING = "DECIDING"
    EXECUTING = "EXECUTING"
    SETTLING = "SETTLING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


@dataclass
class LoopSettings:
    publish_delay: timedelta = timedelta(minutes=5)
    poll_interval: float = 30.0          # first backoff between feed polls (s)
    max_poll_interval: float = 300.0
    max_polls: int = 10                  # polls per candle before the cycle is skipped
    retry_attempts: int = 3
    retry_delay: float = 1.0
    min_order_interval: float = 2.0
    settle_wait: float = 2.0
    error_cooldown: float = 60.0
    history_size: int = 5000             # raw signals kept for smoother rebuilds


@dataclass
class CycleResult:
    timestamp: Optional[datetime]
    processed: bool
    decision: Optional[Decision] = None
    trades: List[TradeRecord] = field(default_factory=list)
    error: Optional[str] = None
    summary: Dict[str, Any] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LiveExecutionLoop:
    """
    Candle-driven live trading for one (asset, account):

      AWAITING_CANDLE -> RECONCILING -> DECIDING -> EXECUTING -> SETTLING

    The same smoother, `decide` and PositionLedger as the backtest. The
    exchange is the source of truth for position and collateral; local state
    is overwritten on every reconcile and persisted after every transition.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        feed: Any,
        gateway: ExchangeGateway,
        state_store: StateStore,
        settings: Optional[LoopSettings] = None,
        initial_capital: float = DEFAULT_INITIAL_CAPITAL,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config_store = config_store
        self.feed = feed
        self.gateway = gateway
        self.state_store = state_store
        self.settings = settings or LoopSettings()
        self.initial_capital = initial_capital
        self._clock = clock
        self._injected_sleep = sleep
        self._sleep = sleep or asyncio.sleep

        cfg = config_store.current()
        self.ledger = PositionLedger(cfg, initial_capital)
        self.smoother = SignalSmoother(cfg.smoothing_window)
        self.throttle = OrderThrottle(self.settings.min_order_interval, sleep=self._sleep)

        self.state = LoopState.IDLE
        self.last_processed: Optional[datetime] = None
        self.last_marked: Optional[datetime] = None
        self.last_reason = ""
        self.equity_curve: List[Dict[str, Any]] = []
        self._raw_history: Deque[float] = deque(maxlen=self.settings.history_size)
        self._warmup: Deque[MarketSample] = deque()
        self._stop_event = asyncio.Event()
        self._started = False

    # -------------------------
    # Lifecycle
    # -------------------------

    async def start(self, warmup: Sequence[MarketSample] = ()) -> None:
        """
        Restore durable state, initialize the gateway and queue warm-up
        history for the smoother. Gateway/auth failures propagate.
        """
        saved = self.state_store.load()
        self.last_processed = saved.last_processed_timestamp
        self.last_marked = saved.last_marked_timestamp
        self.last_reason = saved.last_decision_reason
        if saved.ledger:
            self.ledger.restore(saved.ledger)
        else:
            self.ledger.position = saved.position

        await self.gateway.initialize()
        self.warm_up(warmup)
        self._started = True
        logger.info(
            "Live loop started for %s (%s); last processed candle %s, position %s",
            self.config.asset, self.config.interval,
            self.last_processed.isoformat() if self.last_processed else "none",
            self.ledger.side.value,
        )

    def warm_up(self, samples: Sequence[MarketSample]) -> None:
        """History fed to the smoother lazily, up to (excluding) the next processed candle."""
        self._warmup = deque(sorted(samples, key=lambda s: s.timestamp))

    async def run(self, max_cycles: Optional[int] = None) -> None:
        if not self._started:
            await self.start()
        cycles = 0
        try:
            while not self._stop_event.is_set():
                await self.run_cycle()
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
        finally:
            await self.shutdown()

    def stop(self) -> None:
        """No new cycle starts; an in-flight cycle finishes its submissions."""
        if self.state is not LoopState.STOPPED:
            self._set_state(LoopState.STOPPING)
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def shutdown(self) -> None:
        if self.state is LoopState.STOPPED:
            return
        self._set_state(LoopState.STOPPING)
        pos = self.ledger.position
        if pos.is_open:
            # reported, never closed on shutdown
            logger.warning(
                "Stopping with open %s position: size %.2f entry %.2f leverage %gx",
                pos.side.value, pos.size, pos.entry_price, pos.leverage,
            )
        try:
            await self.gateway.shutdown()
        finally:
            self._persist()
            self._set_state(LoopState.STOPPED)
            logger.info("Live loop stopped")

    @property
    def config(self) -> StrategyConfig:
        return self.config_store.current()

    # -------------------------
    # Cycle
    # -------------------------

    async def run_cycle(self) -> CycleResult:
        self._reload_config()
        try:
            sample = await self.await_next_sample()
        except Exception as e:
            logger.exception("Unexpected error while waiting for candle: %s", e)
            await self._wait(self.settings.error_cooldown)
            return CycleResult(None, processed=False, error=str(e))

        if sample is None:
            return CycleResult(None, processed=False)

        try:
            result = await self.process_sample(sample)
        except Exception as e:
            logger.exception("Cycle for %s failed: %s", sample.timestamp.isoformat(), e)
            result = CycleResult(sample.timestamp, processed=False, error=str(e))

        if result.error and not self.stopping:
            await self._wait(self.settings.error_cooldown)
        return result

    async def await_next_sample(self) -> Optional[MarketSample]:
        """
        Sleep until the next candle should be published, then poll with
        exponential backoff until a strictly newer candle shows up.
        """
        self._set_state(LoopState.AWAITING_CANDLE)
        cfg = self.config

        if self.last_processed is not None:
            target = next_candle_boundary(
                self.last_processed, cfg.interval, self.settings.publish_delay)
            delay = (target - self._clock()).total_seconds()
            if delay > 0:
                logger.info("Next %s candle expected at %s; sleeping %.0fs",
                            cfg.interval, target.isoformat(), delay)
                await self._wait(delay)

        backoff = self.settings.poll_interval
        for attempt in range(1, self.settings.max_polls + 1):
            if self.stopping:
                return None
            try:
                sample = await asyncio.to_thread(self.feed.fetch_latest)
            except TransientNetworkError as e:
                logger.warning("Feed poll %d/%d failed: %s",
                               attempt, self.settings.max_polls, e)
                sample = None
            else:
                if sample is not None and (
                    self.last_processed is None or sample.timestamp > self.last_processed
                ):
                    return sample
                if sample is not None:
                    logger.debug("Feed still at %s", sample.timestamp.isoformat())

            if attempt < self.settings.max_polls:
                await self._wait(backoff)
                backoff = min(backoff * 2, self.settings.max_poll_interval)

        logger.warning("No new %s candle after %d polls; skipping cycle",
                       cfg.interval, self.settings.max_polls)
        return None

    async def process_sample(self, sample: MarketSample) -> CycleResult:
        """
        Run one candle through reconcile -> decide -> execute. A candle at
        or before the last processed timestamp is discarded, so replaying
        the same candle never trades twice.
        """
        if self.last_processed is not None and sample.timestamp <= self.last_processed:
            logger.info("Candle %s already processed; skipping", sample.timestamp.isoformat())
            return CycleResult(sample.timestamp, processed=False)

        cfg = self.config
        ts = sample.timestamp.isoformat()
        self.gateway.observe_price(cfg.asset, sample.price)

        try:
            await self.reconcile(sample.price)
        except (TransientNetworkError, FatalExecutionError) as e:
            logger.error("%s reconcile failed, cycle skipped: %s", ts, e)
            return CycleResult(sample.timestamp, processed=False, error=str(e))

        # one funding period per candle, also when the candle is retried
        if self.ledger.position.is_open and self.last_marked != sample.timestamp:
            self.ledger.mark_to_market(sample.price)
            self.last_marked = sample.timestamp

        self._set_state(LoopState.DECIDING)
        signal = self._smooth(sample)
        decision = decide(signal, cfg)
        self.last_reason = decision.reason
        logger.info("%s %s", ts, format_decision(decision, cfg))

        trades: List[TradeRecord] = []
        action = plan_transition(self.ledger.side, decision)
        if action != HOLD and not cfg.enabled:
            logger.info("Trading paused; %s %s not submitted", action, decision.target_side.value)
        elif action != HOLD:
            try:
                trades = await self.execute(action, decision, sample, cfg)
            except (TransientNetworkError, FatalExecutionError) as e:
                logger.error("%s %s to %s aborted: %s", ts, action, decision.target_side.value, e)
                self._persist()
                return CycleResult(sample.timestamp, processed=False,
                                   decision=decision, error=str(e))

        self.last_processed = sample.timestamp
        self._commit_signal(sample.raw_signal)
        self.ledger.update_peak()
        self.equity_curve.append({
            "timestamp": ts,
            "price": sample.price,
            "equity": self.ledger.equity(),
            "peak_equity": self.ledger.peak_equity,
            "side": self.ledger.side.value,
            "size": self.ledger.position.size,
            "signal": signal,
        })
        self._persist()

        summary = compute_metrics(
            self.ledger.trade_log, self.equity_curve, self.initial_capital,
            interval=cfg.interval, total_funding=self.ledger.total_funding_paid,
        )
        logger.info(
            "%s equity %.2f (return %.2f%%, max DD %.2f%%), trades %d, position %s",
            ts, summary["final_equity"], summary["total_return_pct"],
            summary["max_drawdown_pct"], summary["num_trades"], self.ledger.side.value,
        )
        return CycleResult(sample.timestamp, processed=True, decision=decision,
                           trades=trades, summary=summary)

    # -------------------------
    # Exchange interaction
    # -------------------------

    async def reconcile(self, reference_price: float = 0.0) -> bool:
        """Overwrite local position and cash with the venue's view. Returns True on a side change."""
        self._set_state(LoopState.RECONCILING)
        cfg = self.config
        pos = await self._submit(lambda: self.gateway.get_position(cfg.asset), "get_position")
        collateral = await self._submit(self.gateway.get_collateral, "get_collateral")

        side = pos.side if pos.exists else Side.NONE
        changed = self.ledger.sync_position(
            side, pos.size, pos.entry_price, pos.mark_price or reference_price,
            leverage=cfg.leverage,
        )
        local = self.ledger.position
        # equity() must equal the venue's total collateral
        self.ledger.set_cash(collateral.total - local.unrealized_pnl + local.accrued_funding)
        if changed:
            self._persist()
        return changed

    async def execute(
        self,
        action: str,
        decision: Decision,
        sample: MarketSample,
        cfg: StrategyConfig,
    ) -> List[TradeRecord]:
        """
        open, or flip = close -> settle (best effort) -> settle wait ->
        re-check venue -> open. Each completed leg is persisted before the
        next one starts.
        """
        self._set_state(LoopState.EXECUTING)
        trades: List[TradeRecord] = []

        if action == FLIP:
            trades.append(await self._close(sample, decision, cfg))
            self._persist()

            await self._settle(cfg.asset)
            await self._sleep(self.settings.settle_wait)

            self._set_state(LoopState.EXECUTING)
            pos = await self._submit(lambda: self.gateway.get_position(cfg.asset), "get_position")
            if pos.exists:
                logger.error(
                    "Venue still reports %s %.4f after close; not opening %s",
                    pos.side.value, pos.size, decision.target_side.value,
                )
                self.ledger.sync_position(pos.side, pos.size, pos.entry_price,
                                          pos.mark_price or sample.price, leverage=cfg.leverage)
                self._persist()
                return trades

        opened = await self._open(decision.target_side, sample, decision, cfg)
        if opened is not None:
            trades.append(opened)
            self._persist()
        return trades

    async def _open(
        self,
        side: Side,
        sample: MarketSample,
        decision: Decision,
        cfg: StrategyConfig,
    ) -> Optional[TradeRecord]:
        notional = self.ledger.position_notional()
        try:
            fee = self.ledger.ensure_can_open(notional)
        except InsufficientFunds as e:
            logger.warning("Open %s skipped: %s", side.value, e)
            return None

        exposure = (notional - fee) * cfg.leverage
        await self.throttle.acquire()
        tx = await self._submit(
            lambda: self.gateway.open_position(cfg.asset, side, exposure),
            f"open {side.value}",
        )
        record = self.ledger.open(
            side, notional, sample.price, leverage=cfg.leverage,
            ts=sample.timestamp.isoformat(), signal=decision.signal,
        )
        logger.info("Opened %s %s margin %.2f at %gx @ %.2f (tx %s)",
                    cfg.asset, side.value, record.size, cfg.leverage, sample.price, tx)
        return record

    async def _close(self, sample: MarketSample, decision: Decision, cfg: StrategyConfig) -> TradeRecord:
        await self.throttle.acquire()
        side = self.ledger.side
        tx = await self._submit(lambda: self.gateway.close_position(cfg.asset), f"close {side.value}")
        record = self.ledger.close(sample.price, sample.timestamp.isoformat(), decision.signal)
        logger.info("Closed %s %s @ %.2f pnl %.2f (tx %s)",
                    cfg.asset, side.value, sample.price, record.pnl, tx)
        return record

    async def _settle(self, asset: str) -> None:
        self._set_state(LoopState.SETTLING)
        try:
            tx = await self.gateway.settle_pnl(asset)
        except Exception as e:
            if is_benign_settle_error(e):
                logger.info("No PnL to settle for %s", asset)
            else:
                logger.warning("PnL settlement for %s failed; continuing: %s", asset, e)
            return
        if tx:
            logger.info("Settled PnL for %s (tx %s)", asset, tx)

    async def _submit(self, operation, description: str):
        return await submit_with_retry(
            operation,
            description=description,
            attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_delay,
            sleep=self._sleep,
        )

    # -------------------------
    # Helpers
    # -------------------------

    def _smooth(self, sample: MarketSample) -> float:
        """
        Smoothed signal for `sample`. The sample itself is only recorded by
        `_commit_signal` once the candle is processed, so a retried candle
        sees the same history as the first attempt.
        """
        while self._warmup and self._warmup[0].timestamp < sample.timestamp:
            self._commit_signal(self._warmup.popleft().raw_signal)
        self._warmup.clear()
        return self.smoother.peek(sample.raw_signal)

    def _commit_signal(self, raw: float) -> None:
        self._raw_history.append(raw)
        self.smoother.update(raw)

    def _reload_config(self) -> None:
        old = self.config
        if not self.config_store.reload():
            return
        new = self.config
        self.ledger.set_config(new)
        if new.asset != old.asset:
            logger.warning("Config asset changed %s -> %s; the feed keeps its startup asset until restart",
                           old.asset, new.asset)
        if new.smoothing_window != old.smoothing_window:
            self.smoother = SignalSmoother(new.smoothing_window)
            self.smoother.warm(self._raw_history)
            logger.info("Smoothing window now %d samples", new.smoothing_window)

    def _persist(self) -> None:
        self.state_store.save(LiveState(
            last_processed_timestamp=self.last_processed,
            last_marked_timestamp=self.last_marked,
            position=self.ledger.position,
            last_decision_reason=self.last_reason,
            ledger=self.ledger.get_portfolio_view(),
        ))

    def _set_state(self, state: LoopState) -> None:
        if state is not self.state:
            logger.debug("Loop state %s -> %s", self.state.value, state.value)
            self.state = state

    async def _wait(self, seconds: float) -> None:
        """Sleep that returns early once stop() is called."""
        if seconds <= 0 or self.stopping:
            return
        if self._injected_sleep is not None:
            await self._injected_sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
