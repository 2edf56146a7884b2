"""
Error taxonomy for the Up/Down trading bot.

Adapters translate library exceptions into these types at their boundary.
The engine catches them around every asynchronous operation and logs;
only feed connection failure during start-up is fatal.
"""


class UpDownBotError(Exception):
    """Base class for all bot errors."""


class TransientUpstreamError(UpDownBotError):
    """Listing, feed or order service unavailable, rate-limited or flaky."""


class NotFoundError(UpDownBotError):
    """Requested upstream resource does not exist."""


class WindowNotYetListedError(NotFoundError):
    """The market window is not (yet) present in the upstream listing."""

    def __init__(self, window_id: str, reason: str = "not listed"):
        super().__init__(f"Window {window_id} {reason}")
        self.window_id = window_id


class InvalidHedgePriceError(UpDownBotError):
    """Computed hedge limit price falls outside (0, 1)."""

    def __init__(self, hedge_price: float, primary_price: float):
        super().__init__(
            f"Hedge price {hedge_price:.4f} outside (0, 1) for primary ask {primary_price:.4f}"
        )
        self.hedge_price = hedge_price
        self.primary_price = primary_price


class OrderSubmissionError(UpDownBotError):
    """The order service refused or failed to accept an order."""


class PersistenceWriteError(UpDownBotError):
    """State could not be written to durable storage."""


class InsufficientBalanceError(UpDownBotError):
    """Available collateral stayed below the configured minimum."""

    def __init__(self, available: float, required: float):
        super().__init__(f"Available USDC {available:.6f} below required {required:.6f}")
        self.available = available
        self.required = required
