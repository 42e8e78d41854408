"""Error taxonomy for the delegation lifecycle.

Construction-time errors (address, salt, arity) are raised immediately and
never retried. Network-facing errors carry enough context (operation hash,
last known state) for the caller to decide whether to re-poll or resubmit.
"""

from __future__ import annotations

from enum import Enum


class DelegatorError(Exception):
    """Base class for every error raised by this package."""


class InvalidAddress(DelegatorError, ValueError):
    """Raised when an account identifier is malformed or the zero address."""

    def __init__(self, value: object, reason: str = "expected 0x + 40 hex digits"):
        self.value = value
        self.reason = reason
        super().__init__(f"invalid address {value!r}: {reason}")


class EmptySaltEntropy(DelegatorError, ValueError):
    """Raised when a delegation salt carries no entropy (zero) or is out of range."""


class ArityMismatch(DelegatorError, ValueError):
    """Raised when redemption inputs do not line up one triple per batch."""


class SigningUnavailable(DelegatorError):
    """Raised when the signing capability cannot produce a signature."""


class IdentityMismatch(DelegatorError):
    """Raised when the redeemer is not the terminal delegate of a chain.

    This is a programmer or configuration error and is not recoverable
    in-process.
    """

    def __init__(self, redeemer: str, delegate: str, chain_index: int):
        self.redeemer = redeemer
        self.delegate = delegate
        self.chain_index = chain_index
        super().__init__(
            f"redeemer {redeemer} is not the delegate {delegate} "
            f"of chain {chain_index}"
        )


class ConfigurationMissing(DelegatorError):
    """Raised at startup when required configuration is absent or invalid."""

    def __init__(self, names: list[str] | tuple[str, ...], detail: str = ""):
        self.names = tuple(names)
        message = f"missing or invalid configuration: {', '.join(self.names)}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class RpcError(DelegatorError):
    """A JSON-RPC error object returned by the node or the bundler."""

    def __init__(self, method: str, code: int | None, message: str, data: object = None):
        self.method = method
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"{method} failed ({code}): {message}")


class RejectionReason(str, Enum):
    MALFORMED = "malformed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NONCE_CONFLICT = "nonce_conflict"
    VALIDATION_FAILED = "validation_failed"
    UNKNOWN = "unknown"


class SubmissionRejected(DelegatorError):
    """Raised when the relay refuses an operation."""

    def __init__(
        self,
        reason: RejectionReason,
        message: str,
        operation_hash: str | None = None,
    ):
        self.reason = reason
        self.operation_hash = operation_hash
        super().__init__(f"operation rejected [{reason.value}]: {message}")


class Timeout(DelegatorError):
    """Raised when no receipt arrived in time.

    The operation may still settle later; the caller can poll again with
    the same handle.
    """

    def __init__(self, operation_hash: str, state: str, waited: float):
        self.operation_hash = operation_hash
        self.state = state
        self.waited = waited
        super().__init__(
            f"no receipt for {operation_hash} after {waited:.2f}s "
            f"(last state: {state})"
        )
