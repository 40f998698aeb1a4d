"""Retry policy, order throttle, durable state file, paper venue and config reload."""

import asyncio
import json

import pytest

from engine.config import ConfigStore, StrategyConfig
from engine.errors import FatalExecutionError, SettlementError, TransientNetworkError, ValidationError
from engine.models import Position, Side
from live.gateway import PaperGateway, create_gateway
from live.retry import (
    FATAL,
    RETRYABLE,
    OrderThrottle,
    classify_error,
    is_benign_settle_error,
    submit_with_retry,
)
from live.state_store import LiveState, StateStore


class _Recorder:
    def __init__(self):
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def test_classify_error():
    assert classify_error(TransientNetworkError("timeout")) == RETRYABLE
    assert classify_error(ConnectionError("reset")) == RETRYABLE
    assert classify_error(RuntimeError("Program log: Error Code: 6117")) == FATAL
    assert classify_error(FatalExecutionError("x")) == FATAL
    assert classify_error(ValidationError("bad")) == FATAL
    assert classify_error(RuntimeError("Market at max capacity")) == FATAL


def test_retry_exhaustion_delays_grow_linearly():
    rec = _Recorder()
    calls = []

    async def op():
        calls.append(1)
        raise TransientNetworkError("timeout")

    with pytest.raises(TransientNetworkError):
        asyncio.run(submit_with_retry(op, attempts=3, base_delay=1.0, sleep=rec.sleep))
    assert len(calls) == 3
    assert rec.sleeps == [1.0, 2.0]


def test_retry_succeeds_after_transient_failure():
    rec = _Recorder()
    outcomes = [TransientNetworkError("blip"), "tx-1"]

    async def op():
        result = outcomes.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    assert asyncio.run(submit_with_retry(op, sleep=rec.sleep)) == "tx-1"
    assert rec.sleeps == [1.0]


def test_fatal_code_stops_immediately():
    rec = _Recorder()
    calls = []

    async def op():
        calls.append(1)
        err = RuntimeError("max open interest")
        err.code = 6154
        raise err

    with pytest.raises(FatalExecutionError) as exc_info:
        asyncio.run(submit_with_retry(op, sleep=rec.sleep))
    assert exc_info.value.code == "6154"
    assert len(calls) == 1
    assert rec.sleeps == []


def test_benign_settle_errors():
    assert is_benign_settle_error(SettlementError("whatever", code="NO_PNL"))
    assert not is_benign_settle_error(SettlementError("no pnl to settle", code="RPC_DOWN"))
    assert is_benign_settle_error(RuntimeError("Nothing to settle for market 2"))
    assert not is_benign_settle_error(RuntimeError("blockhash expired"))


def test_order_throttle_enforces_spacing():
    now = [100.0]
    rec = _Recorder()
    throttle = OrderThrottle(2.0, clock=lambda: now[0], sleep=rec.sleep)

    async def scenario():
        await throttle.acquire()
        now[0] += 0.5
        waited = await throttle.acquire()
        now[0] += 5.0
        await throttle.acquire()
        return waited

    assert asyncio.run(scenario()) == pytest.approx(1.5)
    assert rec.sleeps == [pytest.approx(1.5)]


# ---------------------------------------------------------------------------
# State file
# ---------------------------------------------------------------------------

def test_state_round_trip(tmp_path, t0):
    store = StateStore(tmp_path / "state" / "ETH_state.json")
    pos = Position(side=Side.SHORT, size=950.0, entry_price=3200.0, leverage=3.0,
                   entry_timestamp=t0.isoformat(), accrued_funding=-1.5, open_fee=0.95)
    store.save(LiveState(last_processed_timestamp=t0, position=pos,
                         last_decision_reason="signal 20 <= 49 -> SHORT"))

    loaded = store.load()
    assert loaded.last_processed_timestamp == t0
    assert loaded.position == pos
    assert loaded.last_decision_reason == "signal 20 <= 49 -> SHORT"
    assert loaded.updated_at is not None

    raw = json.loads(store.path.read_text())
    assert set(raw) >= {"lastProcessedTimestamp", "position", "lastDecisionReason", "updatedAt"}
    assert list(store.path.parent.glob("*.tmp")) == []


def test_missing_state_file_starts_fresh(tmp_path):
    state = StateStore(tmp_path / "missing.json").load()
    assert state.last_processed_timestamp is None
    assert state.position.side is Side.NONE


# ---------------------------------------------------------------------------
# Paper venue
# ---------------------------------------------------------------------------

def test_paper_gateway_fills_at_reference_price():
    gw = create_gateway("paper", initial_collateral=1_000.0, leverage=2.0, fee_rate=0.001)
    gw.observe_price("ETH", 100.0)

    async def scenario():
        await gw.initialize()
        await gw.open_position("ETH", Side.LONG, 1_000.0)
        gw.observe_price("ETH", 110.0)
        pos = await gw.get_position("ETH")
        await gw.close_position("ETH")
        await gw.settle_pnl("ETH")
        return pos, await gw.get_collateral()

    pos, collateral = asyncio.run(scenario())
    assert pos.exists and pos.side is Side.LONG
    assert pos.size == pytest.approx(10.0)
    assert pos.mark_price == 110.0
    # +100 pnl, two fees of 0.5 on 500 margin
    assert collateral.total == pytest.approx(1_099.0)


def test_paper_settle_without_pnl_raises_structured_error():
    gw = PaperGateway()
    with pytest.raises(SettlementError) as exc_info:
        asyncio.run(gw.settle_pnl("ETH"))
    assert exc_info.value.code == "NO_PNL"


def test_unknown_venue():
    with pytest.raises(ValidationError):
        create_gateway("nowhere")


# ---------------------------------------------------------------------------
# Config reload
# ---------------------------------------------------------------------------

def test_config_store_writes_defaults(tmp_path):
    path = tmp_path / "trading-config.json"
    store = ConfigStore(path)
    assert path.exists()
    assert store.current() == StrategyConfig()


def test_config_reload_swaps_snapshot(tmp_path):
    path = tmp_path / "trading-config.json"
    store = ConfigStore(path)
    before = store.current()

    path.write_text(json.dumps({"leverage": 2, "lowThreshold": 30, "highThreshold": 70}))
    assert store.reload() is True
    after = store.current()
    assert (after.leverage, after.low_threshold, after.high_threshold) == (2.0, 30.0, 70.0)
    assert before.leverage == 4.0
    assert store.reload() is False


@pytest.mark.parametrize("content", [
    json.dumps({"lowThreshold": 60, "highThreshold": 40}),
    "{not json",
    json.dumps([1, 2, 3]),
])
def test_config_reload_rejects_invalid_file(tmp_path, content):
    path = tmp_path / "trading-config.json"
    store = ConfigStore(path)
    before = store.current()

    path.write_text(content)
    assert store.reload() is False
    assert store.current() is before


def test_config_reload_string_false_pauses_trading(tmp_path):
    path = tmp_path / "trading-config.json"
    store = ConfigStore(path)
    assert store.current().enabled is True

    path.write_text(json.dumps({"enabled": "false"}))
    assert store.reload() is True
    assert store.current().enabled is False
