"""Error taxonomy for rebalancing.

Each class maps to a fallback decision: quote, slippage, build and submission
failures move on to the next preference; completion failures leave the ledger
entry for the next sweep.
"""


class RebalanceError(Exception):
    """Base class for rebalancing errors."""

    pass


class ConfigurationError(RebalanceError):
    """Routes or settings could not be loaded."""

    pass


class UnsupportedBridgeError(RebalanceError):
    """No adapter is registered for a rail identifier."""

    def __init__(self, bridge: str):
        self.bridge = bridge
        super().__init__(f"Unsupported bridge type: {bridge}")


class QuoteUnavailableError(RebalanceError):
    """The rail cannot price the transfer right now."""

    pass


class SlippageExceededError(RebalanceError):
    """The quoted received amount is below the minimum acceptable."""

    def __init__(self, received: int, minimum: int):
        self.received = received
        self.minimum = minimum
        super().__init__(f"Quoted {received} is below minimum acceptable {minimum}")


class BuildFailedError(RebalanceError):
    """The rail cannot construct a valid transaction sequence."""

    pass


class SubmissionFailedError(RebalanceError):
    """An origin transaction reverted or timed out."""

    pass


class LedgerWriteError(RebalanceError):
    """A ledger mutation did not complete."""

    pass


class CompletionCheckError(RebalanceError):
    """Destination readiness or callback preparation failed."""

    pass
