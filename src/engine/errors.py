class EngineError(Exception):
    """Base class for every error raised by the strategy core."""


class ValidationError(EngineError):
    """Bad configuration; rejected before a run starts."""


class InvalidState(EngineError):
    """Operation not allowed for the current position (e.g. open while open)."""


class InsufficientFunds(EngineError):
    """Not enough cash to open; the caller skips opening this cycle."""


class TransientNetworkError(EngineError):
    """Retryable failure talking to the feed or the venue."""


class FatalExecutionError(EngineError):
    """
    Non-retryable venue failure (account under liquidation, market at
    capacity). Aborts the current attempt only.
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class SettlementError(EngineError):
    """
    PnL settlement failed. `code` carries the venue's structured error code
    when it provides one.
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code
