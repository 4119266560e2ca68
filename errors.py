class RewardError(Exception):
    """
    base class for reward failures that reach the caller.
    `retryable` tells the caller whether repeating the same request
    (same idempotency key) can succeed without changing it.
    """

    retryable = False
    code = "reward_error"


class InvalidRewardRequest(RewardError, ValueError):
    code = "invalid_request"


class InstrumentUnavailable(RewardError, ValueError):
    """instrument is unknown or not active (e.g. delisted)."""

    code = "instrument_unavailable"

    def __init__(self, symbol: str, reason: str):
        super().__init__(f"Instrument {symbol} {reason}.")
        self.symbol = symbol


class PriceUnavailable(RewardError):
    retryable = True
    code = "price_unavailable"

    def __init__(self, symbol: str):
        super().__init__(f"No current price available for {symbol}.")
        self.symbol = symbol


class InsufficientHoldings(RewardError, ValueError):
    """a reversal would drive a holding below zero."""

    code = "insufficient_holdings"


class DuplicateIdempotencyKey(Exception):
    """
    raised by storage when an insert hits the idempotency-key uniqueness
    constraint. the engine never lets this escape: it re-fetches instead.
    """

    def __init__(self, key: str):
        super().__init__(f"Reward with idempotency key {key!r} already exists.")
        self.key = key
