from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

from data.sentiment.client import SentimentFeed
from engine.config import ConfigStore, StrategyConfig
from engine.errors import TransientNetworkError
from engine.portfolio import DEFAULT_INITIAL_CAPITAL
from strategies.strategy import describe_strategy

from .gateway import GATEWAYS, create_gateway
from .loop import LiveExecutionLoop, LoopSettings
from .state_store import StateStore

# Load .env from repo root
load_dotenv()

logger = logging.getLogger(__name__)

LIVE_DIR = Path(os.getenv("LIVE_STATE_DIR", "live_state"))


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run the sentiment strategy against a venue.")
    p.add_argument("--config", default=str(LIVE_DIR / "trading-config.json"),
                   help="Strategy config JSON (hot reloaded between cycles).")
    p.add_argument("--state", help="Durable state file (default: live_state/<ASSET>_state.json)")
    p.add_argument("--venue", default=os.getenv("TRADING_VENUE", "paper"), choices=sorted(GATEWAYS))
    p.add_argument("--capital", type=float, default=DEFAULT_INITIAL_CAPITAL,
                   help="Starting collateral for the paper venue.")
    p.add_argument("--warmup-days", type=float, default=30.0,
                   help="History used to warm the smoother.")
    p.add_argument("--poll-interval", type=float, default=30.0)
    p.add_argument("--publish-delay-min", type=float, default=5.0)
    p.add_argument("--max-cycles", type=int, default=None)
    p.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    return p.parse_args()


async def _run(args: argparse.Namespace) -> None:
    config_store = ConfigStore(args.config, StrategyConfig())
    cfg = config_store.current()
    logger.info(describe_strategy(cfg))

    feed = SentimentFeed(asset=cfg.asset, interval=cfg.interval)
    gateway = create_gateway(
        args.venue,
        initial_collateral=args.capital,
        leverage=cfg.leverage,
        fee_rate=cfg.fee_rate,
    )
    state_path = Path(args.state) if args.state else LIVE_DIR / f"{cfg.asset}_state.json"

    trading_loop = LiveExecutionLoop(
        config_store,
        feed,
        gateway,
        StateStore(state_path),
        settings=LoopSettings(
            poll_interval=args.poll_interval,
            publish_delay=timedelta(minutes=args.publish_delay_min),
        ),
        initial_capital=args.capital,
    )

    warmup = []
    if cfg.smoothing_window > 1 and args.warmup_days > 0:
        try:
            history = await asyncio.to_thread(feed.fetch_history)
        except TransientNetworkError as e:
            logger.warning("Could not fetch warm-up history; smoother starts cold: %s", e)
        else:
            if history:
                cutoff = history[-1].timestamp - timedelta(days=args.warmup_days)
                warmup = [s for s in history if s.timestamp >= cutoff]

    await trading_loop.start(warmup)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, trading_loop.stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    await trading_loop.run(max_cycles=args.max_cycles)


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
