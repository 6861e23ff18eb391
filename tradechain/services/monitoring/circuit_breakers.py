"""
Circuit breakers for the two upstreams: the JSON-RPC provider and the
pinning service.

An open breaker makes calls fail immediately; ChainClient and PinningClient
translate that into UpstreamUnavailable, which the Chain Watcher treats as
retryable. After reset_timeout one trial call is let through.
"""

import logging
import threading
from typing import Dict, Iterable, Optional

import pybreaker
from pybreaker import CircuitBreakerError

from tradechain.config import settings

logger = logging.getLogger(__name__)

SERVICE_NAMES = {
    "rpc": "json_rpc_provider",
    "pinning": "pinning_service",
}


class CircuitBreakerLogListener(pybreaker.CircuitBreakerListener):
    """Logs every transition; opening is an error, anything else a warning."""

    def state_change(self, cb, old_state, new_state):
        opened = new_state.name == pybreaker.STATE_OPEN
        (logger.error if opened else logger.warning)(
            f"{cb.name} breaker {old_state.name} -> {new_state.name}",
            extra={
                "circuit_breaker": cb.name,
                "old_state": old_state.name,
                "new_state": new_state.name,
                "fail_count": cb.fail_counter,
                "reset_timeout": cb.reset_timeout,
            }
        )


def create_breaker(
    name: str,
    fail_max: Optional[int] = None,
    reset_timeout: Optional[int] = None,
    exclude: Iterable[type] = (),
) -> pybreaker.CircuitBreaker:
    """
    Build a logged breaker. Thresholds default to CIRCUIT_BREAKER_FAIL_MAX
    and CIRCUIT_BREAKER_RESET_TIMEOUT.

    exclude lists exceptions that mean the upstream answered (a revert, a
    missing receipt, a 404 from the gateway) and must not count as failures.
    """
    return pybreaker.CircuitBreaker(
        name=name,
        fail_max=fail_max or settings.circuit_breaker_fail_max,
        reset_timeout=reset_timeout or settings.circuit_breaker_reset_timeout,
        exclude=list(exclude),
        listeners=[CircuitBreakerLogListener()]
    )


_breakers: Dict[str, pybreaker.CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_breaker(service_name: str, exclude: Iterable[type] = ()) -> pybreaker.CircuitBreaker:
    """
    Process-wide breaker for "rpc" or "pinning", created on first use.

    The exclude list of the first caller is the one that sticks.

    Raises:
        ValueError: unknown service name
    """
    if service_name not in SERVICE_NAMES:
        raise ValueError(f"Unknown service name: {service_name}. Must be one of {sorted(SERVICE_NAMES)}")

    with _breakers_lock:
        if service_name not in _breakers:
            _breakers[service_name] = create_breaker(SERVICE_NAMES[service_name], exclude=exclude)
            logger.info("circuit breaker created", extra={"circuit_breaker": SERVICE_NAMES[service_name]})
        return _breakers[service_name]


__all__ = [
    "CircuitBreakerError",
    "CircuitBreakerLogListener",
    "create_breaker",
    "get_breaker",
]
