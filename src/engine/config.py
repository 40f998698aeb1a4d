from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ValidationError
from .intervals import INTERVAL_HOURS

logger = logging.getLogger(__name__)

MODES = ("momentum", "contrarian")

# camelCase keys used by the trading-config.json files
_KEY_ALIASES = {
    "strategy": "mode",
    "lowThreshold": "low_threshold",
    "highThreshold": "high_threshold",
    "shortThreshold": "low_threshold",
    "longThreshold": "high_threshold",
    "maxPositionRatio": "max_position_ratio",
    "fundingRatePerPeriod": "funding_rate_per_period",
    "feeRate": "fee_rate",
    "liquidationLossFraction": "liquidation_loss_fraction",
    "liquidationPenaltyFraction": "liquidation_penalty_fraction",
    "minOpenBalance": "min_open_balance",
    "smoothingWindow": "smoothing_window",
    "dataInterval": "interval",
    "timeframe": "interval",
    "extremeLowThreshold": "extreme_low_threshold",
    "extremeHighThreshold": "extreme_high_threshold",
}


_TRUE_STRINGS = ("true", "1", "yes", "on")
_FALSE_STRINGS = ("false", "0", "no", "off")


def _to_bool(value: Any) -> bool:
    """JSON booleans, 0/1, or the strings true/false; anything else is rejected."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass(frozen=True)
class StrategyConfig:
    asset: str = "ETH"
    mode: str = "momentum"
    low_threshold: float = 49.0
    high_threshold: float = 50.0
    leverage: float = 4.0
    max_position_ratio: float = 0.95
    funding_rate_per_period: float = 0.00003
    fee_rate: float = 0.001
    liquidation_loss_fraction: float = 0.95
    liquidation_penalty_fraction: float = 0.95
    min_open_balance: float = 100.0
    smoothing_window: int = 1
    interval: str = "4h"
    extreme_low_threshold: float = 0.0
    extreme_high_threshold: float = 100.0
    enabled: bool = True

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "StrategyConfig":
        """
        Build a validated config from a dict. Unknown keys are ignored,
        camelCase aliases are accepted, missing keys take defaults.
        """
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (raw or {}).items():
            name = _KEY_ALIASES.get(key, key)
            if name in known and value is not None:
                values[name] = value

        try:
            cfg = cls(**values)._coerced()
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid config value: {e}") from e
        cfg.validate()
        return cfg

    def _coerced(self) -> "StrategyConfig":
        return replace(
            self,
            asset=str(self.asset).upper(),
            mode=str(self.mode).lower(),
            low_threshold=float(self.low_threshold),
            high_threshold=float(self.high_threshold),
            leverage=float(str(self.leverage).rstrip("xX")),
            max_position_ratio=float(self.max_position_ratio),
            funding_rate_per_period=float(self.funding_rate_per_period),
            fee_rate=float(self.fee_rate),
            liquidation_loss_fraction=float(self.liquidation_loss_fraction),
            liquidation_penalty_fraction=float(
                self.liquidation_penalty_fraction),
            min_open_balance=float(self.min_open_balance),
            smoothing_window=int(self.smoothing_window),
            extreme_low_threshold=float(self.extreme_low_threshold),
            extreme_high_threshold=float(self.extreme_high_threshold),
            enabled=_to_bool(self.enabled),
        )

    def validate(self) -> None:
        if self.mode not in MODES:
            raise ValidationError(
                f"mode must be one of {MODES}, got {self.mode!r}")
        if self.low_threshold >= self.high_threshold:
            raise ValidationError(
                f"low_threshold ({self.low_threshold}) must be below "
                f"high_threshold ({self.high_threshold})"
            )
        if self.leverage <= 0:
            raise ValidationError(f"leverage must be positive, got {self.leverage}")
        if not 0.0 < self.max_position_ratio <= 1.0:
            raise ValidationError("max_position_ratio must be in (0, 1]")
        if not 0.0 < self.liquidation_loss_fraction <= 1.0:
            raise ValidationError("liquidation_loss_fraction must be in (0, 1]")
        if not 0.0 <= self.liquidation_penalty_fraction <= 1.0:
            raise ValidationError("liquidation_penalty_fraction must be in [0, 1]")
        if self.fee_rate < 0 or self.fee_rate >= 1:
            raise ValidationError("fee_rate must be in [0, 1)")
        if self.min_open_balance < 0:
            raise ValidationError("min_open_balance must be >= 0")
        if self.smoothing_window < 1:
            raise ValidationError("smoothing_window must be >= 1")
        if self.interval not in INTERVAL_HOURS:
            raise ValidationError(
                f"interval must be one of {sorted(INTERVAL_HOURS)}, got {self.interval!r}"
            )
        if self.extreme_low_threshold > self.low_threshold:
            raise ValidationError(
                "extreme_low_threshold must not exceed low_threshold")
        if self.extreme_high_threshold < self.high_threshold:
            raise ValidationError(
                "extreme_high_threshold must not be below high_threshold")

    def with_overrides(self, **overrides: Any) -> "StrategyConfig":
        """New validated snapshot; the receiver is never mutated."""
        cfg = replace(self, **overrides)._coerced()
        cfg.validate()
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConfigStore:
    """
    Holds the current StrategyConfig snapshot for a live loop.

    `reload()` re-reads the JSON file and swaps the whole snapshot. Callers
    take `current()` once per cycle and use that object for every decision
    in the cycle.
    """

    def __init__(self, path: Path | str, defaults: Optional[StrategyConfig] = None):
        self.path = Path(path)
        self.defaults = defaults or StrategyConfig()
        self._snapshot: StrategyConfig = self.defaults
        self._raw_text: Optional[str] = None
        self.load()

    def current(self) -> StrategyConfig:
        return self._snapshot

    def load(self) -> StrategyConfig:
        """Initial load. A missing file is written with the defaults."""
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self.defaults.to_dict(), indent=2))
            logger.info("Wrote default config to %s", self.path)

        text = self.path.read_text()
        self._snapshot = self._parse(text)
        self._raw_text = text
        return self._snapshot

    def reload(self) -> bool:
        """
        Returns True when a new snapshot was installed. An unreadable or
        invalid file keeps the previous snapshot.
        """
        try:
            text = self.path.read_text()
        except OSError as e:
            logger.error("Config reload failed reading %s: %s", self.path, e)
            return False

        if text == self._raw_text:
            return False

        try:
            new_cfg = self._parse(text)
        except (ValidationError, json.JSONDecodeError) as e:
            logger.error("Config reload rejected, keeping previous snapshot: %s", e)
            return False

        self._raw_text = text
        if new_cfg == self._snapshot:
            return False

        self._snapshot = new_cfg
        logger.info(
            "Config reloaded: %s %s %s L:%sx thresholds %s/%s",
            new_cfg.asset, new_cfg.interval, new_cfg.mode, new_cfg.leverage,
            new_cfg.low_threshold, new_cfg.high_threshold,
        )
        return True

    def _parse(self, text: str) -> StrategyConfig:
        loaded = json.loads(text)
        if not isinstance(loaded, dict):
            raise ValidationError(f"Config file {self.path} must hold a JSON object")
        merged = {**self.defaults.to_dict(), **loaded}
        return StrategyConfig.from_dict(merged)
