"""Error types for Thunder Portal SDK."""


class SwapError(Exception):
    """Base exception for all swap errors."""

    def __init__(self, message: str, details: str = ""):
        self.details = details or message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "details": self.details}


class ConfigurationError(SwapError):
    """Invalid or missing configuration."""
    pass


class ValidationError(SwapError):
    """Malformed input. Never retried."""
    pass


class ScriptError(ValidationError):
    """Malformed HTLC script parameters."""
    pass


class RandomnessError(SwapError):
    """The OS randomness source is unavailable."""
    pass


class SwapNotFoundError(SwapError):
    """No swap record for the given id."""
    pass


class RpcError(SwapError):
    """Errors from node / provider / micro-API calls."""

    def __init__(self, message: str, method: str = "", details: str = "",
                 transient: bool = False):
        self.method = method
        self.transient = transient
        super().__init__(f"RPC Error [{method}]: {message}", details or message)


class InsufficientFundsError(SwapError):
    """No UTXO covers amount + fee."""
    pass


class DuplicateEscrowError(SwapError):
    """An escrow already exists for this order hash."""
    pass


class PreimageMismatchError(SwapError):
    """H(preimage) != hashlock. Protocol violation, never retried."""
    pass


class InvalidStateError(SwapError):
    """Operation not allowed in the current swap / escrow state."""
    pass


class ConfirmationTimeout(SwapError, TimeoutError):
    """Confirmations not reached in time. Triggers the refund path."""
    pass


# Node / provider messages that indicate a retryable condition
TRANSIENT_MARKERS = (
    "connection reset",
    "connection refused",
    "timed out",
    "nonce too low",
    "replacement transaction underpriced",
    "loading block index",
    "temporarily unavailable",
)


def is_transient(exc: BaseException) -> bool:
    """True if an adapter failure may be retried once."""
    if isinstance(exc, RpcError):
        if exc.transient:
            return True
        text = str(exc).lower()
        return any(marker in text for marker in TRANSIENT_MARKERS)
    return False
