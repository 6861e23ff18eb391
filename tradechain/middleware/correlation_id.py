"""
Correlation ID Middleware
Carries the request correlation ID from the API into Chain Watcher messages
"""

from typing import Optional

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

# Re-export CorrelationIdMiddleware for convenience
__all__ = ["CorrelationIdMiddleware", "get_correlation_id", "set_correlation_id"]


def get_correlation_id() -> str:
    """
    Get current correlation ID from async context.

    Dramatiq messages do not carry the request context, so the dispatcher
    reads the ID here and sends it along with each message.

    Returns:
        str: The correlation ID or 'none' if not available
    """
    return correlation_id.get() or 'none'


def set_correlation_id(value: Optional[str]) -> None:
    """Restore a propagated correlation ID inside a worker thread."""
    # Worker threads are reused across messages
    correlation_id.set(value if value and value != 'none' else None)
