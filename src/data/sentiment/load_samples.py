from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import List, Sequence

import pandas as pd

from engine.models import MarketSample

from .records import parse_records

logger = logging.getLogger(__name__)

SAMPLES_DIR = Path("data/samples")
CSV_COLUMNS = ["timestamp", "price", "fgi"]


def load_samples(path: Path | str) -> List[MarketSample]:
    """
    Load a historical sample stream from .json (feed payload as saved) or
    .csv (timestamp, price, fgi columns). Output is sorted and de-duplicated.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"samples file not found: {path}")

    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path)
        payload = df.to_dict(orient="records")
    else:
        with open(path, "r") as f:
            payload = json.load(f)

    samples = parse_records(payload, source=str(path))
    logger.info("Loaded %d samples from %s", len(samples), path)
    return samples


def save_samples(samples: Sequence[MarketSample], path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(
        [
            {
                "timestamp": s.timestamp.isoformat(),
                "price": s.price,
                "fgi": s.raw_signal,
            }
            for s in samples
        ],
        columns=CSV_COLUMNS,
    )
    df.to_csv(path, index=False)
    return path


def trim_to_days(samples: Sequence[MarketSample], days: int | None) -> List[MarketSample]:
    """
    Keep the last `days` of history, measured back from the newest sample
    so the same file always trims to the same stream.
    """
    samples = list(samples)
    if not samples or not days or days <= 0:
        return samples
    cutoff = samples[-1].timestamp - timedelta(days=days)
    return [s for s in samples if s.timestamp >= cutoff]
