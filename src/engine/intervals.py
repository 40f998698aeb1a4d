from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

INTERVAL_HOURS = {
    "15min": 0.25,
    "1h": 1.0,
    "4h": 4.0,
    "24h": 24.0,
}

HOURS_PER_YEAR = 365 * 24


def interval_hours(interval: str) -> float:
    try:
        return INTERVAL_HOURS[interval]
    except KeyError:
        raise ValueError(
            f"Unknown interval {interval!r}; expected one of {sorted(INTERVAL_HOURS)}"
        ) from None


def interval_seconds(interval: str) -> float:
    return interval_hours(interval) * 3600.0


def periods_per_year(interval: str) -> float:
    return HOURS_PER_YEAR / interval_hours(interval)


def next_candle_boundary(
    last: datetime,
    interval: str,
    publish_delay: timedelta = timedelta(0),
) -> datetime:
    """
    Start of the candle after the one containing `last`, plus the delay the
    feed needs to publish it.

    Boundaries are aligned to the epoch, so a 4h feed publishes at
    00:00, 04:00, 08:00 ... UTC.
    """
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)

    period = interval_seconds(interval)
    ts = last.timestamp()
    current = math.floor(ts / period) * period
    nxt = datetime.fromtimestamp(current + period, tz=timezone.utc)
    return nxt + publish_delay
