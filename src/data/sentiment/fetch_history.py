from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .client import SentimentFeed
from .load_samples import SAMPLES_DIR, save_samples, trim_to_days

logger = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Download one year of sentiment + price history to CSV."
    )
    p.add_argument("--asset", default="ETH")
    p.add_argument("--timeframe", default="4h", help="15min | 1h | 4h | 24h")
    p.add_argument("--days", type=int, default=None, help="Keep only the last N days.")
    p.add_argument(
        "--out",
        help="Output CSV (default: data/samples/<ASSET>_<timeframe>.csv)",
    )
    p.add_argument("--log-level", default="INFO")
    return p.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    feed = SentimentFeed(asset=args.asset, interval=args.timeframe)
    samples = trim_to_days(feed.fetch_history(), args.days)

    out = Path(args.out) if args.out else SAMPLES_DIR / f"{feed.asset}_{args.timeframe}.csv"
    save_samples(samples, out)
    if samples:
        logger.info(
            "Saved %d samples (%s -> %s) to %s",
            len(samples), samples[0].timestamp.isoformat(),
            samples[-1].timestamp.isoformat(), out,
        )
    else:
        logger.warning("Feed returned no valid samples; wrote empty %s", out)


if __name__ == "__main__":
    main()
