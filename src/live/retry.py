from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Optional, TypeVar

from engine.errors import EngineError, FatalExecutionError, SettlementError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0

RETRYABLE = "retryable"
FATAL = "fatal"

# Venue error codes that no retry can fix
FATAL_CODES = {
    "6117": "account is being liquidated",
    "6154": "market at max open interest",
}
FATAL_MESSAGES = (
    "being liquidated",
    "under liquidation",
    "max open interest",
    "max capacity",
)

BENIGN_SETTLE_CODES = {"NO_PNL", "ALREADY_SETTLED", "POSITION_CLOSED"}
# Fallback for venues that only report text
BENIGN_SETTLE_MESSAGES = (
    "no pnl to settle",
    "nothing to settle",
    "already settled",
    "position closed",
)

_CODE_RE = re.compile(r"Error Code: (\d+)")


def extract_error_code(err: BaseException) -> Optional[str]:
    code = getattr(err, "code", None)
    if code is not None:
        return str(code)
    m = _CODE_RE.search(str(err))
    return m.group(1) if m else None


def classify_error(err: BaseException) -> str:
    """
    retryable: network / transient venue errors.
    fatal: account under liquidation, venue at capacity, or any engine
    error that is not a transient network failure.
    """
    if isinstance(err, FatalExecutionError):
        return FATAL
    if extract_error_code(err) in FATAL_CODES:
        return FATAL
    text = str(err).lower()
    if any(m in text for m in FATAL_MESSAGES):
        return FATAL
    if isinstance(err, TransientNetworkError):
        return RETRYABLE
    if isinstance(err, EngineError):
        return FATAL
    return RETRYABLE


def is_benign_settle_error(err: BaseException) -> bool:
    """Nothing-to-settle style failures; prefers the structured code."""
    code = getattr(err, "code", None)
    if isinstance(err, SettlementError) and code is not None:
        return str(code).upper() in BENIGN_SETTLE_CODES
    text = str(err).lower()
    return any(m in text for m in BENIGN_SETTLE_MESSAGES)


async def submit_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str = "order",
    attempts: int = MAX_RETRY_ATTEMPTS,
    base_delay: float = RETRY_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` up to `attempts` times. The delay before attempt n+1 is
    base_delay * n. Fatal errors stop immediately as FatalExecutionError;
    exhaustion raises TransientNetworkError.
    """
    last: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last = e
            if classify_error(e) == FATAL:
                code = extract_error_code(e)
                reason = FATAL_CODES.get(code or "", str(e))
                logger.error("%s failed fatally (code %s): %s", description, code, reason)
                if isinstance(e, FatalExecutionError):
                    raise
                raise FatalExecutionError(f"{description}: {reason}", code=code) from e

            logger.warning("%s attempt %d/%d failed: %s", description, attempt, attempts, e)
            if attempt < attempts:
                await sleep(base_delay * attempt)

    raise TransientNetworkError(
        f"{description} failed after {attempts} attempts: {last}"
    ) from last


class OrderThrottle:
    """Minimum spacing between order submissions."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None

    async def acquire(self) -> float:
        """Wait out the remaining interval; returns the seconds waited."""
        waited = 0.0
        if self._last is not None:
            remaining = self.min_interval - (self._clock() - self._last)
            if remaining > 0:
                await self._sleep(remaining)
                waited = remaining
        self._last = self._clock()
        return waited
