from __future__ import annotations

import argparse

import pandas as pd

from .store import DEFAULT_DB_PATH, BacktestResultStore


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Query stored sweep results.")
    p.add_argument("--db", default=str(DEFAULT_DB_PATH))
    sub = p.add_subparsers(dest="command", required=True)

    top = sub.add_parser("top", help="Top performers by return")
    top.add_argument("limit", nargs="?", type=int, default=10)
    top.add_argument("--asset")
    top.add_argument("--strategy")

    sharpe = sub.add_parser("sharpe", help="Top performers by Sharpe ratio")
    sharpe.add_argument("limit", nargs="?", type=int, default=10)
    sharpe.add_argument("--asset")
    sharpe.add_argument("--strategy")

    params = sub.add_parser("params", help="Latest result for one parameter set")
    params.add_argument("asset")
    params.add_argument("low", type=float)
    params.add_argument("high", type=float)
    params.add_argument("leverage", type=float)
    params.add_argument("--strategy")

    sub.add_parser("stats", help="Database statistics")
    sub.add_parser("best", help="Best configuration per asset")
    return p.parse_args()


def main() -> None:
    args = _parse_args()
    store = BacktestResultStore(args.db)

    if args.command in ("top", "sharpe"):
        by = "total_return" if args.command == "top" else "sharpe_ratio"
        df = store.top(by=by, limit=args.limit, asset=args.asset, strategy=args.strategy)
        title = "Top performers by return" if by == "total_return" else "Top performers by Sharpe ratio"
        print(f"{title}:\n")
        print(df.to_string(index=False) if not df.empty else "(no results)")
    elif args.command == "params":
        row = store.params(args.asset, args.low, args.high, args.leverage, strategy=args.strategy)
        if row is None:
            print("No stored result for those parameters.")
        else:
            print(pd.Series(row).to_string())
    elif args.command == "stats":
        print(pd.Series(store.stats()).to_string())
    elif args.command == "best":
        df = store.best_per_asset()
        print(df.to_string(index=False) if not df.empty else "(no results)")


if __name__ == "__main__":
    main()
