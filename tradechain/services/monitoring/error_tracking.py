"""
Sentry Error Tracking
Reports unexpected failures from the API and the Chain Watcher workers.

Client-side CoordinatorErrors (invalid payloads, busy keys, reverted
transactions) are part of normal operation and are never sent.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def drop_expected_errors(event: dict, hint: dict) -> Optional[dict]:
    """
    Sentry before_send hook.

    Returns None (drop) for CoordinatorErrors rendered with a 4xx status;
    upstream and infrastructure failures are kept.
    """
    from tradechain.services.errors import CoordinatorError

    exc_info = hint.get("exc_info")
    if exc_info:
        exc = exc_info[1]
        if isinstance(exc, CoordinatorError) and exc.http_status < 500:
            return None
    return event


def init_sentry(config=None) -> bool:
    """
    Initialize Sentry SDK with the FastAPI integration.

    Args:
        config: Settings instance (defaults to the module-level settings)

    Returns:
        True when Sentry was initialized; False when SENTRY_DSN is unset or
        the SDK rejected the configuration (the service keeps running)
    """
    if config is None:
        from tradechain.config import settings as config

    if not config.sentry_dsn:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.utils import BadDsn

    environment = config.sentry_environment or config.environment
    try:
        sentry_sdk.init(
            dsn=config.sentry_dsn,
            environment=environment,
            traces_sample_rate=0.1,
            before_send=drop_expected_errors,
            integrations=[FastApiIntegration()],
        )
    except BadDsn as e:
        logger.error("Invalid SENTRY_DSN, error tracking disabled", extra={"error": str(e)})
        return False

    logger.info("Sentry initialized", extra={"environment": environment})
    return True


def set_submission_context(
    request_id: str,
    actor: str,
    slot: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> None:
    """
    Tag events with the SubmissionRecord a worker is processing.

    Args:
        request_id: SubmissionRecord id
        actor: Actor name ("process_submission" or "watch_confirmation")
        slot: Logical key slot, when known
        correlation_id: Correlation ID of the originating API request
    """
    import sentry_sdk

    sentry_sdk.set_context("submission", {
        "request_id": request_id,
        "slot": slot,
        "correlation_id": correlation_id or "none",
    })
    sentry_sdk.set_tag("request_id", request_id)
    sentry_sdk.set_tag("actor", actor)


def add_breadcrumb(category: str, message: str, level: str = "info", data: Optional[dict] = None) -> None:
    """Record one Chain Watcher step (broadcast, confirmation) on the Sentry trail."""
    import sentry_sdk

    sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})
