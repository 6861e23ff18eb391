"""
Error Taxonomy
Stable machine-readable error kinds shared by the queue, watcher, clients and API
"""

from typing import Optional


class CoordinatorError(Exception):
    """
    Base class for every error surfaced by the coordination layer.

    Attributes:
        kind: Stable machine-readable identifier (e.g. 'key_busy')
        http_status: Status code used when rendered by the API
        retryable: Whether the Chain Watcher may re-attempt after this error
    """
    kind = "internal_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidPayload(CoordinatorError):
    """Client error: malformed CID, out-of-range emission, bad key. Never retried."""
    kind = "invalid_payload"
    http_status = 400


class KeyBusy(CoordinatorError):
    """Another write with a different idempotency token is in flight for the key."""
    kind = "key_busy"
    http_status = 409

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message, request_id=request_id)
        self.request_id = request_id


class NotCancellable(CoordinatorError):
    """Cancellation requested after the transaction was broadcast."""
    kind = "not_cancellable"
    http_status = 409


class RecordNotFound(CoordinatorError):
    kind = "not_found"
    http_status = 404


class TransientChainError(CoordinatorError):
    """Network or RPC hiccup; retried with backoff up to a bound."""
    kind = "transient_chain_error"
    http_status = 503
    retryable = True


class NonceConflict(TransientChainError):
    """Nonce already used or replacement underpriced; retried with a fresh nonce."""
    kind = "nonce_conflict"


class Reverted(CoordinatorError):
    """Contract logic rejected the call. Fatal for the request, never retried."""
    kind = "reverted"
    http_status = 422


class InsufficientFunds(CoordinatorError):
    """Signer cannot pay for gas. Fatal for the request."""
    kind = "insufficient_funds"
    http_status = 422


class ConfirmationTimeout(CoordinatorError):
    """No receipt within the configured wait. The transaction may still land."""
    kind = "confirmation_timeout"
    http_status = 504


class UpstreamUnavailable(CoordinatorError):
    """Pinning service or RPC endpoint unreachable (or its circuit is open)."""
    kind = "upstream_unavailable"
    http_status = 503
    retryable = True


class ContractConfigError(RuntimeError):
    """Configured contract does not match the expected interface. Raised at startup."""
    pass


CANCELLED_KIND = "cancelled"
