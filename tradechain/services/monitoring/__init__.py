"""
Monitoring Module
Exports for structured logging, circuit breakers and error tracking
"""

from tradechain.services.monitoring.logging import setup_logging, CorrelationJsonFormatter
from tradechain.services.monitoring.circuit_breakers import (
    create_breaker,
    get_breaker,
    CircuitBreakerError,
    CircuitBreakerLogListener,
)
from tradechain.services.monitoring.error_tracking import (
    init_sentry,
    set_submission_context,
    add_breadcrumb,
)

__all__ = [
    "setup_logging",
    "CorrelationJsonFormatter",
    "create_breaker",
    "get_breaker",
    "CircuitBreakerError",
    "CircuitBreakerLogListener",
    "init_sentry",
    "set_submission_context",
    "add_breadcrumb",
]
