from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from engine.models import MarketSample

logger = logging.getLogger(__name__)

TIMESTAMP_KEYS = ("timestamp", "date", "time")
PRICE_KEYS = ("price", "close")
SIGNAL_KEYS = ("fgi", "cfgi", "sentimentIndex", "sentiment", "signal")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Accepts ISO strings ("2024-03-01T04:00:00Z", "2024-03-01 04:00:00"),
    epoch seconds or epoch milliseconds. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = float(value)
        if math.isnan(seconds) or math.isinf(seconds):
            return None
        if seconds > 1e11:  # milliseconds
            seconds /= 1000.0
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _first(obj: Dict[str, Any], keys: Iterable[str]) -> Any:
    for k in keys:
        v = obj.get(k)
        if v is not None and v != "":
            return v
    return None


def _to_float(value: Any) -> Optional[float]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def parse_record(obj: Any) -> Optional[MarketSample]:
    """
    One feed record -> MarketSample, or None when it is unusable.

    The signal may live at the top level or under "raw" (latest.json puts
    cfgi there). A missing or out-of-range signal rejects the record
    rather than guessing a neutral value.
    """
    if not isinstance(obj, dict):
        return None

    ts = parse_timestamp(_first(obj, TIMESTAMP_KEYS))
    price = _to_float(_first(obj, PRICE_KEYS))

    raw_signal = _first(obj, SIGNAL_KEYS)
    if raw_signal is None and isinstance(obj.get("raw"), dict):
        raw_signal = _first(obj["raw"], SIGNAL_KEYS)
    signal = _to_float(raw_signal)

    if ts is None or price is None or price <= 0.0:
        return None
    if signal is None or not 0.0 <= signal <= 100.0:
        return None

    return MarketSample(timestamp=ts, price=price, raw_signal=signal)


def extract_records(payload: Any) -> List[Any]:
    """The feed returns a bare list, a single object, or {"data": [...]}."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "records", "items"):
            if isinstance(payload.get(key), list):
                return payload[key]
        return [payload]
    return []


def parse_records(payload: Any, source: str = "feed") -> List[MarketSample]:
    """
    Parse a payload into samples sorted by timestamp with duplicate
    timestamps removed (the last record for a timestamp wins).
    """
    records = extract_records(payload)
    by_ts: Dict[datetime, MarketSample] = {}
    skipped = 0
    for obj in records:
        sample = parse_record(obj)
        if sample is None:
            skipped += 1
            continue
        by_ts[sample.timestamp] = sample

    if skipped:
        logger.warning("Skipped %d invalid records from %s", skipped, source)

    return [by_ts[ts] for ts in sorted(by_ts)]
