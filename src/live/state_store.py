from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from data.sentiment.records import parse_timestamp
from engine.models import Position

logger = logging.getLogger(__name__)


@dataclass
class LiveState:
    """
    Durable live-loop state:
    {
        "lastProcessedTimestamp": "2024-03-01T04:00:00+00:00" | null,
        "lastMarkedTimestamp": "2024-03-01T04:00:00+00:00" | null,
        "position": {...Position.to_dict()},
        "lastDecisionReason": str,
        "updatedAt": iso str,
        "ledger": {...PositionLedger.get_portfolio_view()}
    }
    """
    last_processed_timestamp: Optional[datetime] = None
    # candle whose funding period is already in position.accrued_funding
    last_marked_timestamp: Optional[datetime] = None
    position: Position = field(default_factory=Position)
    last_decision_reason: str = ""
    updated_at: Optional[str] = None
    ledger: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        ts = self.last_processed_timestamp
        marked = self.last_marked_timestamp
        return {
            "lastProcessedTimestamp": ts.isoformat() if ts else None,
            "lastMarkedTimestamp": marked.isoformat() if marked else None,
            "position": self.position.to_dict(),
            "lastDecisionReason": self.last_decision_reason,
            "updatedAt": self.updated_at,
            "ledger": self.ledger,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LiveState":
        return cls(
            last_processed_timestamp=parse_timestamp(raw.get("lastProcessedTimestamp")),
            last_marked_timestamp=parse_timestamp(raw.get("lastMarkedTimestamp")),
            position=Position.from_dict(raw.get("position")),
            last_decision_reason=raw.get("lastDecisionReason") or "",
            updated_at=raw.get("updatedAt"),
            ledger=raw.get("ledger") or {},
        )


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write tmp in the same directory, fsync, then os.replace over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class StateStore:
    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> LiveState:
        """Missing file -> fresh state. A corrupt file is an error, not a reset."""
        if not self.path.exists():
            logger.info("No state file at %s; starting fresh", self.path)
            return LiveState()
        with self.path.open("r") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"State file {self.path} must hold a JSON object")
        return LiveState.from_dict(raw)

    def save(self, state: LiveState) -> None:
        state.updated_at = datetime.now(timezone.utc).isoformat()
        _atomic_write_json(self.path, state.to_dict())
