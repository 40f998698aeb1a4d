"""Flask API: single backtests and sweeps."""

import pytest

from app.main import create_app

SIGNALS = [55, 72, 81, 64, 33, 18, 25, 47, 59, 90, 12, 50]
PRICES = [100, 103, 108, 104, 97, 92, 95, 99, 101, 110, 96, 100]


@pytest.fixture
def client(tmp_path):
    app = create_app({
        "TESTING": True,
        "RESULTS_DB": str(tmp_path / "results.db"),
        "BACKTEST_RUNS_DIR": str(tmp_path / "runs"),
    })
    return app.test_client()


def test_backtest_with_inline_samples(client, tmp_path, feed_records):
    resp = client.post("/backtests", json={
        "config": {"asset": "ETH", "lowThreshold": 40, "highThreshold": 60, "leverage": 2},
        "samples": feed_records(SIGNALS, PRICES),
    })
    assert resp.status_code == 200

    body = resp.get_json()
    assert body["asset"] == "ETH"
    assert body["num_trades"] == body["summary"]["num_trades"]
    assert body["num_trades"] > 0

    run_dir = tmp_path / "runs" / "ETH" / body["run_id"]
    for name in ("summary.json", "config.json", "trades.csv", "equity_curve.csv"):
        assert (run_dir / name).exists()


def test_backtest_rejects_inverted_thresholds(client, feed_records):
    resp = client.post("/backtests", json={
        "config": {"lowThreshold": 50, "highThreshold": 49},
        "samples": feed_records(SIGNALS, PRICES),
    })
    assert resp.status_code == 400
    assert "error" in resp.get_json()


def test_backtest_without_samples(client):
    resp = client.post("/backtests", json={"config": {}})
    assert resp.status_code == 400


def test_backtest_missing_samples_file(client, tmp_path):
    resp = client.post("/backtests", json={"samples_path": str(tmp_path / "nope.csv")})
    assert resp.status_code == 404


def test_sweep_then_query_top(client, feed_records):
    resp = client.post("/sweeps", json={
        "config": {"asset": "ETH"},
        "samples": feed_records(SIGNALS, PRICES),
        "leverage_levels": [1, 2],
        "low_range": [30, 40, 10],
        "high_range": [60, 60, 5],
        "limit": 3,
    })
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["num_combinations"] == 4
    assert body["num_failed"] == 0
    assert len(body["top"]) == 3

    top = client.get("/sweeps/top?by=total_return&limit=10&asset=eth").get_json()
    assert top["by"] == "total_return"
    assert len(top["results"]) == 4
    returns = [r["total_return"] for r in top["results"]]
    assert returns == sorted(returns, reverse=True)


def test_top_rejects_unknown_column(client):
    resp = client.get("/sweeps/top?by=leverage")
    assert resp.status_code == 400
