# src/app/backtests.py

from pathlib import Path
import datetime as dt
import json
import csv

from flask import Blueprint, current_app, request, jsonify

from data.backtests.store import DEFAULT_DB_PATH, RANKABLE, BacktestResultStore
from data.sentiment.load_samples import load_samples, trim_to_days
from data.sentiment.records import parse_records
from engine.backtest import run_backtest
from engine.config import StrategyConfig
from engine.errors import ValidationError
from engine.portfolio import DEFAULT_INITIAL_CAPITAL
from engine.sweep import SweepGrid, run_sweep

bp = Blueprint("backtests", __name__)

DEFAULT_RUNS_DIR = Path("backtest_runs")


def _runs_dir() -> Path:
    return Path(current_app.config.get("BACKTEST_RUNS_DIR", DEFAULT_RUNS_DIR))


def _store() -> BacktestResultStore:
    return BacktestResultStore(current_app.config.get("RESULTS_DB", DEFAULT_DB_PATH))


def _samples_from_request(data: dict):
    """
    Samples either inline ("samples": [...feed records...]) or from a file
    on the server ("samples_path": "data/samples/ETH_4h.csv").
    """
    if data.get("samples") is not None:
        samples = parse_records(data["samples"], source="request")
    elif data.get("samples_path"):
        samples = load_samples(Path(data["samples_path"]))
    else:
        raise ValidationError("provide 'samples' or 'samples_path'")
    return trim_to_days(samples, data.get("days"))


def _save_backtest_run(
    asset: str,
    config: dict,
    result,
) -> str:
    """
    Persist a single backtest run under:

      backtest_runs/<asset>/<run_id>/

    Files:
      - summary.json        (metrics)
      - config.json         (what was run)
      - trades.csv          (full trade log)
      - equity_curve.csv    (one row per sample)
    """

    base_dir = _runs_dir() / asset
    base_dir.mkdir(parents=True, exist_ok=True)

    # Run ID: UTC timestamp, filesystem-safe (no colons)
    run_id = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    run_dir = base_dir / run_id
    run_dir.mkdir(parents=True, exist_ok=True)

    # 1) summary.json
    with open(run_dir / "summary.json", "w") as f:
        json.dump(result.summary, f, indent=2)

    # 2) config.json
    with open(run_dir / "config.json", "w") as f:
        json.dump(config or {}, f, indent=2)

    # 3) trades.csv
    with open(run_dir / "trades.csv", "w", newline="") as f:
        fieldnames = ["timestamp", "action", "price", "signal",
                      "size", "pnl", "fees", "balance_after"]
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for t in result.trades:
            writer.writerow(t.to_dict())

    # 4) equity_curve.csv
    with open(run_dir / "equity_curve.csv", "w", newline="") as f:
        if result.equity_curve:
            fieldnames = list(result.equity_curve[0].keys())
        else:
            fieldnames = ["timestamp", "equity"]
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in result.equity_curve:
            writer.writerow(row)

    return run_id


@bp.errorhandler(ValidationError)
def _bad_request(e):
    return jsonify({"error": str(e)}), 400


@bp.errorhandler(FileNotFoundError)
def _not_found(e):
    return jsonify({"error": str(e)}), 404


@bp.route("/backtests", methods=["POST"])
def create_backtest():
    data = request.get_json(silent=True) or {}

    config = StrategyConfig.from_dict(data.get("config", {}))
    samples = _samples_from_request(data)
    if not samples:
        return jsonify({"error": "no valid samples"}), 400

    try:
        result = run_backtest(
            samples,
            config,
            initial_capital=float(data.get("initial_capital", DEFAULT_INITIAL_CAPITAL)),
            close_at_end=bool(data.get("close_at_end", True)),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    # Persist full run to disk
    run_id = _save_backtest_run(config.asset, result.config, result)

    # Return only light summary + metadata
    response = {
        "asset": config.asset,
        "strategy": config.mode,
        "run_id": run_id,
        "summary": result.summary,
        "num_trades": len(result.trades),
    }

    return jsonify(response)


@bp.route("/sweeps", methods=["POST"])
def create_sweep():
    data = request.get_json(silent=True) or {}

    base = StrategyConfig.from_dict({
        "low_threshold": 0,
        "high_threshold": 100,
        **(data.get("config") or {}),
    })
    samples = _samples_from_request(data)
    if not samples:
        return jsonify({"error": "no valid samples"}), 400

    try:
        grid = SweepGrid.from_ranges(
            data.get("leverage_levels", [1, 2, 3, 4, 5]),
            tuple(data.get("low_range", (20, 50, 5))),
            tuple(data.get("high_range", (50, 80, 5))),
            tuple(data.get("extreme_low_range", (0, 0, 5))),
            tuple(data.get("extreme_high_range", (100, 100, 5))),
        )
    except TypeError as e:
        return jsonify({"error": f"invalid range: {e}"}), 400

    rank_by = data.get("rank_by", "total_return")
    if rank_by not in RANKABLE:
        return jsonify({"error": f"cannot rank by {rank_by!r}"}), 400

    df = run_sweep(
        samples,
        base,
        grid,
        initial_capital=float(data.get("initial_capital", DEFAULT_INITIAL_CAPITAL)),
        parallel=bool(data.get("parallel", False)),
        rank_by=rank_by,
    )
    run_id = _store().save_sweep(df)

    limit = int(data.get("limit", 10))
    top = df.head(limit)
    return jsonify({
        "run_id": run_id,
        "num_combinations": len(df),
        "num_failed": int(df["error"].notna().sum()) if not df.empty else 0,
        "top": json.loads(top.to_json(orient="records")),
    })


@bp.route("/sweeps/top", methods=["GET"])
def top_sweeps():
    by = request.args.get("by", "total_return")
    if by not in RANKABLE:
        return jsonify({"error": f"cannot rank by {by!r}"}), 400

    df = _store().top(
        by=by,
        limit=request.args.get("limit", 10, type=int),
        asset=request.args.get("asset"),
        strategy=request.args.get("strategy"),
    )
    return jsonify({
        "by": by,
        "results": json.loads(df.to_json(orient="records")) if not df.empty else [],
    })
