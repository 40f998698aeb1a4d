from datetime import datetime, timedelta, timezone

import pytest

from engine.config import StrategyConfig
from engine.models import MarketSample

T0 = datetime(2024, 3, 1, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def make_samples():
    """
    Factory: make_samples(signals, prices=None, step_hours=4) -> [MarketSample]
    Prices default to a flat 100.
    """
    def _make(signals, prices=None, step_hours=4.0, start=T0):
        if prices is None:
            prices = [100.0] * len(signals)
        return [
            MarketSample(
                timestamp=start + timedelta(hours=step_hours * i),
                price=float(p),
                raw_signal=float(s),
            )
            for i, (s, p) in enumerate(zip(signals, prices))
        ]
    return _make


@pytest.fixture
def base_config():
    return StrategyConfig()


@pytest.fixture
def feed_records():
    """Raw feed payload records, 4h apart, in the shape latest.json / 1_year.json use."""
    def _records(signals, prices=None, start=T0):
        if prices is None:
            prices = [100.0] * len(signals)
        return [
            {
                "timestamp": (start + timedelta(hours=4 * i)).isoformat(),
                "price": p,
                "fgi": s,
            }
            for i, (s, p) in enumerate(zip(signals, prices))
        ]
    return _records
