"""
Exception hierarchy for the load generator.

Transport-level failures (NetworkError) are retried inside the RPC client.
Node rejections (RpcError) are surfaced and classified by the submitter.
AllocatorStateError signals a broken nonce invariant and must end the run.
"""
from typing import Any, Optional


class LoadGenError(Exception):
    """Base exception for all load generator errors."""
    pass


class ConfigurationError(LoadGenError):
    """Raised when a load test configuration is missing or invalid."""
    pass


class NetworkError(LoadGenError):
    """
    Raised on connection failures, timeouts and HTTP 5xx responses.

    :param maybe_delivered: False only when the request provably never reached
                            the node (connect timeout, connection refused).
    """

    def __init__(self, message: str, maybe_delivered: bool = True):
        self.maybe_delivered = maybe_delivered
        super().__init__(message)


class RpcError(LoadGenError):
    """Raised when the node returns a well-formed JSON-RPC error object."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error {code}: {message}")


class MalformedResponseError(LoadGenError):
    """Raised when an RPC response cannot be decoded into the expected shape."""
    pass


class ValidationError(LoadGenError):
    """Base class for local transaction validation failures."""
    pass


class InvalidAddressError(ValidationError):
    """Raised when a recipient is not a syntactically valid address."""
    pass


class InvalidAmountError(ValidationError):
    """Raised when a value, gas price, gas limit, nonce or chain id is out of range."""
    pass


class SigningError(LoadGenError):
    """Raised when a transaction cannot be signed with the supplied key."""
    pass


class ReceiptTimeoutError(LoadGenError, TimeoutError):
    """
    Raised when no receipt shows up within the polling budget.
    The transaction may still be mined later.
    """

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"No receipt for {tx_hash} after {timeout:.1f}s")


class AllocatorStateError(LoadGenError):
    """Raised when the nonce allocator detects an invariant violation."""
    pass
