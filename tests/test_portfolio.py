"""PositionLedger financial model: fees, funding, liquidation, flips."""

import pytest

from engine.config import StrategyConfig
from engine.errors import InsufficientFunds, InvalidState
from engine.models import Side
from engine.portfolio import PositionLedger


@pytest.fixture
def ledger():
    return PositionLedger(StrategyConfig(), 10_000.0)


def test_open_deducts_fee_before_sizing(ledger):
    rec = ledger.open(Side.LONG, 9_500.0, 100.0, ts="t0", signal=80.0)

    assert rec.action == "OPEN_LONG"
    assert rec.fees == pytest.approx(9.5)
    assert ledger.cash_balance == pytest.approx(9_990.5)
    assert ledger.position.size == pytest.approx(9_490.5)
    assert ledger.position.open_fee == pytest.approx(9.5)
    assert ledger.position.leverage == 4.0


def test_immediate_close_costs_both_fees(ledger):
    ledger.open(Side.LONG, ledger.position_notional(), 100.0)
    rec = ledger.close(100.0)

    open_fee = 9.5
    close_fee = 9_490.5 * 0.001
    assert rec.action == "CLOSE"
    assert rec.pnl == pytest.approx(-(open_fee + close_fee))
    assert ledger.cash_balance == pytest.approx(10_000.0 + rec.pnl)
    assert ledger.position.side is Side.NONE
    assert ledger.position.size == 0.0


def test_leveraged_pnl_on_close(ledger):
    ledger.open(Side.SHORT, 9_500.0, 100.0)
    rec = ledger.close(90.0)

    size = 9_490.5
    gross = size * 4 * 0.10
    close_fee = size * 0.001
    assert rec.pnl == pytest.approx(gross - close_fee - 9.5)
    assert ledger.cash_balance == pytest.approx(9_990.5 + gross - close_fee)


def test_open_while_open_is_invalid(ledger):
    ledger.open(Side.LONG, 1_000.0, 100.0)
    with pytest.raises(InvalidState):
        ledger.open(Side.SHORT, 1_000.0, 100.0)


def test_close_when_flat_is_invalid(ledger):
    with pytest.raises(InvalidState):
        ledger.close(100.0)


def test_insufficient_funds_leaves_state_untouched():
    ledger = PositionLedger(StrategyConfig(), 100.0)
    with pytest.raises(InsufficientFunds):
        ledger.open(Side.LONG, ledger.position_notional(), 100.0)
    assert ledger.cash_balance == 100.0
    assert ledger.position.side is Side.NONE
    assert ledger.trade_log == []


def test_funding_long_pays_short_receives():
    long_ledger = PositionLedger(StrategyConfig(), 10_000.0)
    long_ledger.open(Side.LONG, 9_500.0, 100.0)
    paid = long_ledger.mark_to_market(100.0)

    short_ledger = PositionLedger(StrategyConfig(), 10_000.0)
    short_ledger.open(Side.SHORT, 9_500.0, 100.0)
    received = short_ledger.mark_to_market(100.0)

    expected = 9_490.5 * 4 * 0.00003
    assert paid == pytest.approx(expected)
    assert received == pytest.approx(-expected)
    assert long_ledger.equity() < long_ledger.cash_balance
    assert short_ledger.equity() > short_ledger.cash_balance


def test_liquidation_forfeits_penalty_and_resets():
    cfg = StrategyConfig(funding_rate_per_period=0.0)
    ledger = PositionLedger(cfg, 10_000.0)
    ledger.open(Side.LONG, 9_500.0, 100.0)

    # -24% at 4x is a 96% loss of margin
    ledger.mark_to_market(76.0)
    rec = ledger.check_liquidation("t1", 76.0, 20.0)

    size = 9_490.5
    assert rec is not None
    assert rec.action == "LIQUIDATION"
    assert rec.pnl == pytest.approx(-(size * 0.95 + 9.5))
    assert ledger.cash_balance == pytest.approx(9_990.5 - size * 0.95)
    assert ledger.position.side is Side.NONE
    assert ledger.liquidations == 1


def test_no_liquidation_below_threshold():
    ledger = PositionLedger(StrategyConfig(funding_rate_per_period=0.0), 10_000.0)
    ledger.open(Side.SHORT, 9_500.0, 100.0)
    ledger.mark_to_market(110.0)  # 40% loss at 4x
    assert ledger.check_liquidation("t1", 110.0) is None
    assert ledger.position.side is Side.SHORT


def test_flip_closes_then_opens_from_post_close_cash(ledger):
    ledger.open(Side.LONG, 9_500.0, 100.0)
    closed, opened = ledger.flip(Side.SHORT, 110.0, "t1", 20.0)

    assert closed.action == "CLOSE"
    assert opened is not None and opened.action == "OPEN_SHORT"
    assert ledger.side is Side.SHORT
    cash_after_close = closed.balance_after
    assert opened.size == pytest.approx(cash_after_close * 0.95 * (1 - 0.001))
    assert [t.action for t in ledger.trade_log] == ["OPEN_LONG", "CLOSE", "OPEN_SHORT"]


def test_flip_to_same_side_is_invalid(ledger):
    ledger.open(Side.LONG, 1_000.0, 100.0)
    with pytest.raises(InvalidState):
        ledger.flip(Side.LONG, 100.0)


def test_peak_equity_is_monotonic(ledger):
    ledger.open(Side.LONG, 9_500.0, 100.0)
    peaks = []
    for price in (105.0, 98.0, 120.0, 90.0):
        ledger.mark_to_market(price)
        ledger.update_peak()
        peaks.append(ledger.peak_equity)
    assert peaks == sorted(peaks)
    assert ledger.peak_equity >= ledger.equity()


def test_sync_position_adopts_exchange_view(ledger):
    ledger.open(Side.LONG, 9_500.0, 100.0)
    changed = ledger.sync_position(Side.SHORT, 10.0, 200.0, 200.0, leverage=4.0)

    assert changed is True
    assert ledger.side is Side.SHORT
    assert ledger.position.size == pytest.approx(10.0 * 200.0 / 4.0)
    assert ledger.position.accrued_funding == 0.0

    assert ledger.sync_position(Side.NONE, 0.0, 0.0, 0.0) is True
    assert ledger.side is Side.NONE


def test_portfolio_view_restore_round_trip(ledger):
    ledger.open(Side.SHORT, 5_000.0, 100.0, ts="t0")
    ledger.mark_to_market(95.0)
    view = ledger.get_portfolio_view()

    restored = PositionLedger(StrategyConfig(), 10_000.0)
    restored.restore(view)
    assert restored.position == ledger.position
    assert restored.cash_balance == ledger.cash_balance
    assert restored.equity() == pytest.approx(ledger.equity())


@pytest.mark.parametrize("side, price", [
    (Side.LONG, 76.25),    # -0.95 / 4
    (Side.SHORT, 123.75),  # +0.95 / 4, funding received does not offset it
])
def test_liquidation_fires_at_exact_boundary(side, price):
    ledger = PositionLedger(StrategyConfig(), 10_000.0)
    ledger.open(side, 9_500.0, 100.0)
    ledger.mark_to_market(price)

    rec = ledger.check_liquidation("t1", price)
    assert rec is not None
    assert rec.action == "LIQUIDATION"
    assert ledger.position.side is Side.NONE


@pytest.mark.parametrize("side, price", [
    (Side.LONG, 76.5),
    (Side.SHORT, 123.5),
])
def test_no_liquidation_just_inside_boundary(side, price):
    ledger = PositionLedger(StrategyConfig(), 10_000.0)
    ledger.open(side, 9_500.0, 100.0)
    ledger.mark_to_market(price)

    assert ledger.check_liquidation("t1", price) is None
    assert ledger.position.side is side
