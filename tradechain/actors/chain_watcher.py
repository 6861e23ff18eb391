"""
Chain Watcher Actors
Dramatiq actors that run Chain Watcher steps and schedule the follow-up step
"""

from typing import Optional

import dramatiq
import structlog

from tradechain.services.chain_watcher import follow_up

logger = structlog.get_logger()

MAX_INFRA_RETRIES = 5


def should_retry(retries_so_far: int, exception: Exception) -> bool:
    """
    Determine if a failed message should be retried based on exception type.

    Chain errors never reach this point; the watcher records them on the
    SubmissionRecord. What does reach it is infrastructure trouble.

    Retryable exceptions (transient failures):
    - OperationalError (from sqlalchemy - database connection issues)
    - ConnectionError, TimeoutError
    - retryable CoordinatorErrors raised while resyncing nonces

    Non-retryable exceptions (permanent failures):
    - ContractConfigError, RuntimeError (misconfigured worker)
    - ValueError, KeyError (programming errors)

    Args:
        retries_so_far: Number of retries attempted so far
        exception: The exception that was raised

    Returns:
        True if should retry (and haven't exceeded max retries), False otherwise
    """
    # Lazy import to avoid import-time dependencies
    from sqlalchemy.exc import OperationalError
    from tradechain.services.errors import ContractConfigError, CoordinatorError

    if isinstance(exception, (ContractConfigError, ValueError, KeyError)):
        logger.info("non_retryable_exception",
                    exception_type=type(exception).__name__,
                    retries=retries_so_far)
        return False

    if isinstance(exception, CoordinatorError):
        will_retry = exception.retryable and retries_so_far < MAX_INFRA_RETRIES
        logger.info("coordinator_exception",
                    kind=exception.kind,
                    retries=retries_so_far,
                    will_retry=will_retry)
        return will_retry

    if isinstance(exception, (ConnectionError, TimeoutError, OperationalError)):
        will_retry = retries_so_far < MAX_INFRA_RETRIES
        logger.info("retryable_exception",
                    exception_type=type(exception).__name__,
                    retries=retries_so_far,
                    will_retry=will_retry)
        return will_retry

    if isinstance(exception, RuntimeError):
        return False

    # Unknown exception - retry to be safe
    logger.warning("unknown_exception_type",
                   exception_type=type(exception).__name__,
                   retries=retries_so_far)
    return retries_so_far < MAX_INFRA_RETRIES


def _bind_context(request_id: str, actor: str, correlation_id: Optional[str]) -> None:
    from tradechain.config import settings
    from tradechain.middleware.correlation_id import set_correlation_id
    from tradechain.services.monitoring.error_tracking import set_submission_context

    set_correlation_id(correlation_id)
    if settings.sentry_dsn:
        set_submission_context(request_id, actor, correlation_id=correlation_id)


def _record_outcome(category: str, outcome) -> None:
    from tradechain.config import settings
    from tradechain.services.monitoring.error_tracking import add_breadcrumb

    if settings.sentry_dsn:
        add_breadcrumb(
            category=category,
            message=f"{outcome.request_id} -> {outcome.status}",
            level="warning" if outcome.status == "failed" else "info",
            data={"next_step": outcome.next_step, "delay_ms": outcome.delay_ms}
        )


@dramatiq.actor(
    max_retries=MAX_INFRA_RETRIES,
    min_backoff=1000,  # 1 second
    max_backoff=60000,  # 1 minute
    retry_when=should_retry,
    queue_name="chain_submissions"
)
def process_submission(request_id: str, correlation_id: Optional[str] = None) -> None:
    """
    Move a pending SubmissionRecord to submitted by signing and broadcasting it.

    State machine transitions (performed by ChainWatcher.submit):
    - pending -> submitted (broadcast accepted)
    - submitted -> pending (retryable broadcast failure, with backoff)
    - pending/submitted -> failed (non-retryable or attempts exhausted)

    The follow-up step (retry or confirmation poll) is sent with a delay.

    Args:
        request_id: SubmissionRecord.id to process
        correlation_id: Correlation ID of the API request that caused the message
    """
    from tradechain.actors import current_runtime

    runtime = current_runtime()
    _bind_context(request_id, "process_submission", correlation_id)
    logger.info("process_submission_start", request_id=request_id)

    outcome = runtime.watcher.submit(request_id)
    _record_outcome("broadcast", outcome)
    follow_up(outcome, runtime.dispatcher)

    logger.info("process_submission_done",
                request_id=request_id,
                status=outcome.status,
                next_step=outcome.next_step,
                delay_ms=outcome.delay_ms)


@dramatiq.actor(
    max_retries=MAX_INFRA_RETRIES,
    min_backoff=1000,
    max_backoff=60000,
    retry_when=should_retry,
    queue_name="chain_confirmations"
)
def watch_confirmation(request_id: str, correlation_id: Optional[str] = None) -> None:
    """
    Poll the receipt of a submitted SubmissionRecord.

    State machine transitions (performed by ChainWatcher.check_confirmation):
    - submitted -> confirmed (receipt at confirmation depth; cache invalidated)
    - submitted -> failed (reverted receipt, or no receipt within the timeout)

    Args:
        request_id: SubmissionRecord.id to check
        correlation_id: Correlation ID of the API request that caused the message
    """
    from tradechain.actors import current_runtime

    runtime = current_runtime()
    _bind_context(request_id, "watch_confirmation", correlation_id)

    outcome = runtime.watcher.check_confirmation(request_id)
    _record_outcome("confirmation", outcome)
    follow_up(outcome, runtime.dispatcher)

    if outcome.done:
        logger.info("watch_confirmation_done", request_id=request_id, status=outcome.status)
