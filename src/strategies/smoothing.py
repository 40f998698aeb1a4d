from __future__ import annotations

from collections import deque
from dataclasses import replace
from typing import Deque, Iterable, List

from engine.intervals import interval_hours
from engine.models import MarketSample


def window_for_days(days: float, interval: str) -> int:
    """Number of samples covering `days` of a feed at `interval` cadence."""
    return max(1, int(round(days * 24 / interval_hours(interval))))


class SignalSmoother:
    """
    Causal trailing mean of the raw signal.

    Output at sample i is the mean of samples [max(0, i-W+1), i]; the first
    W-1 outputs use the shorter window instead of returning nothing.
    """

    def __init__(self, window: int = 1):
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = window
        self._values: Deque[float] = deque(maxlen=window)

    def update(self, raw: float) -> float:
        self._values.append(float(raw))
        # sum() over the window every time, so batch and live agree bit for bit
        return sum(self._values) / len(self._values)

    def peek(self, raw: float) -> float:
        """What `update(raw)` would return, without recording `raw`."""
        values = list(self._values)
        values.append(float(raw))
        values = values[-self.window:]
        return sum(values) / len(values)

    def warm(self, raws: Iterable[float]) -> None:
        for r in raws:
            self.update(r)

    def reset(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)


def smooth_series(values: Iterable[float], window: int) -> List[float]:
    smoother = SignalSmoother(window)
    return [smoother.update(v) for v in values]


def smooth_samples(samples: Iterable[MarketSample], window: int) -> List[MarketSample]:
    smoother = SignalSmoother(window)
    return [
        replace(s, smoothed_signal=smoother.update(s.raw_signal))
        for s in samples
    ]
