"""Parameter sweep: grid expansion, isolation of failures, ranking, rolling windows."""

import pandas as pd
import pytest

import engine.sweep as sweep
from engine.config import StrategyConfig
from engine.sweep import (
    SweepGrid,
    expand_range,
    generate_combinations,
    generate_rolling_windows,
    rank_results,
    run_rolling_sweep,
    run_sweep,
)

SIGNALS = [55, 72, 81, 64, 33, 18, 25, 47, 59, 90, 12, 50, 61, 38, 44, 70]
PRICES = [100, 103, 108, 104, 97, 92, 95, 99, 101, 110, 96, 100, 102, 99, 98, 104]


@pytest.fixture
def sweep_base():
    return StrategyConfig(low_threshold=0, high_threshold=100)


@pytest.fixture
def small_grid():
    return SweepGrid(
        leverage_levels=[1, 2],
        low_values=[30, 40, 50],
        high_values=[50, 60],
    )


def test_expand_range_inclusive_and_clamped():
    assert expand_range(20, 50, 10) == [20, 30, 40, 50]
    assert expand_range(20, 52, 10) == [20, 30, 40, 50, 52]
    assert expand_range(90, 120, 10) == [90, 100]
    assert expand_range(50, 20, 10) == [20, 30, 40, 50]
    assert expand_range(45, 45, 5) == [45]


def test_combinations_enforce_low_below_high(small_grid):
    combos = generate_combinations(small_grid)

    # (50, 50) is dropped for each leverage
    assert len(combos) == 10
    assert all(c["low_threshold"] < c["high_threshold"] for c in combos)


def test_leverage_by_threshold_grid_row_count(make_samples, sweep_base):
    grid = SweepGrid(
        leverage_levels=[1, 2],
        low_values=[20, 25],
        high_values=[75, 80],
    )
    assert len(generate_combinations(grid)) == 8

    df = run_sweep(make_samples(SIGNALS, PRICES), sweep_base, grid, parallel=False)
    assert len(df) == 8
    assert not (df["low_threshold"] >= df["high_threshold"]).any()
    assert df["error"].isna().all()


def test_combinations_respect_extreme_bounds():
    grid = SweepGrid(
        leverage_levels=[1],
        low_values=[30],
        high_values=[70],
        extreme_low_values=[10, 40],
        extreme_high_values=[60, 90],
    )
    combos = generate_combinations(grid)
    assert combos == [{
        "leverage": 1,
        "low_threshold": 30,
        "high_threshold": 70,
        "extreme_low_threshold": 10,
        "extreme_high_threshold": 90,
    }]


def test_sweep_rows_one_per_combination(make_samples, sweep_base, small_grid):
    df = run_sweep(make_samples(SIGNALS, PRICES), sweep_base, small_grid, parallel=False)

    assert len(df) == 10
    assert (df["low_threshold"] < df["high_threshold"]).all()
    assert df["error"].isna().all()
    returns = df["total_return"].tolist()
    assert returns == sorted(returns, reverse=True)


def test_sweep_row_matches_single_backtest(make_samples, sweep_base, small_grid):
    from engine.backtest import run_backtest

    samples = make_samples(SIGNALS, PRICES)
    df = run_sweep(samples, sweep_base, small_grid, parallel=False)
    row = df[(df["leverage"] == 2) & (df["low_threshold"] == 40) & (df["high_threshold"] == 60)].iloc[0]

    single = run_backtest(samples, sweep_base.with_overrides(
        leverage=2, low_threshold=40, high_threshold=60))
    assert row["total_return"] == single.summary["total_return"]
    assert row["num_trades"] == single.summary["num_trades"]


def test_failing_combination_does_not_abort_sweep(monkeypatch, make_samples, sweep_base, small_grid):
    real = sweep.run_backtest

    def flaky(samples, cfg, initial_capital=10_000.0):
        if cfg.leverage == 2:
            raise RuntimeError("boom")
        return real(samples, cfg, initial_capital)

    monkeypatch.setattr(sweep, "run_backtest", flaky)
    df = run_sweep(make_samples(SIGNALS, PRICES), sweep_base, small_grid, parallel=False)

    assert len(df) == 10
    failed = df[df["error"].notna()]
    assert len(failed) == 5
    assert (failed["leverage"] == 2).all()
    assert failed["error"].str.contains("boom").all()
    # error rows rank last
    assert df.tail(5)["error"].notna().all()


def test_parallel_matches_serial(make_samples, sweep_base, small_grid):
    samples = make_samples(SIGNALS, PRICES)
    serial = run_sweep(samples, sweep_base, small_grid, parallel=False)
    parallel = run_sweep(samples, sweep_base, small_grid, parallel=True, max_workers=2)
    pd.testing.assert_frame_equal(serial, parallel)


def test_rank_by_sharpe():
    df = pd.DataFrame([
        {"leverage": 1, "low_threshold": 30, "high_threshold": 60,
         "total_return": 5.0, "sharpe_ratio": 0.5, "error": None},
        {"leverage": 2, "low_threshold": 30, "high_threshold": 60,
         "total_return": 1.0, "sharpe_ratio": 2.0, "error": None},
        {"leverage": 3, "low_threshold": 30, "high_threshold": 60,
         "total_return": None, "sharpe_ratio": None, "error": "x"},
    ])
    ranked = rank_results(df, by="sharpe_ratio")
    assert ranked["leverage"].tolist() == [2, 1, 3]


def test_rolling_windows(make_samples):
    # 5 days of 4h candles
    samples = make_samples([50] * 30)
    windows = generate_rolling_windows(samples, 2)

    assert len(windows) == 4
    assert [len(w["samples"]) for w in windows] == [12, 12, 12, 12]
    assert windows[1]["samples"][0].timestamp == samples[6].timestamp


def test_rolling_sweep_tags_windows(make_samples, sweep_base):
    samples = make_samples((SIGNALS * 2)[:30], (PRICES * 2)[:30])
    grid = SweepGrid(leverage_levels=[1], low_values=[40], high_values=[60])
    df = run_rolling_sweep(samples, sweep_base, grid, window_days=2, parallel=False)

    assert len(df) == 4
    assert df["window_index"].tolist() == [0, 1, 2, 3]
    assert (df["sample_count"] == 12).all()
