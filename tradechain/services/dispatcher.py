"""
Work Dispatcher
Hands SubmissionRecords to the Chain Watcher workers
"""

import structlog

from tradechain.middleware.correlation_id import get_correlation_id

logger = structlog.get_logger(__name__)


class DramatiqDispatcher:
    """
    Sends Chain Watcher messages through the configured Dramatiq broker.

    Messages carry only the request id and correlation id; workers re-read
    the record, so a duplicate or late message is harmless.
    """

    def dispatch_submission(self, request_id: str, delay_ms: int = 0) -> None:
        from tradechain.actors.chain_watcher import process_submission

        process_submission.send_with_options(
            args=(request_id,),
            kwargs={"correlation_id": get_correlation_id()},
            delay=delay_ms or None
        )
        logger.info("submission_dispatched", request_id=request_id, delay_ms=delay_ms)

    def dispatch_confirmation_check(self, request_id: str, delay_ms: int = 0) -> None:
        from tradechain.actors.chain_watcher import watch_confirmation

        watch_confirmation.send_with_options(
            args=(request_id,),
            kwargs={"correlation_id": get_correlation_id()},
            delay=delay_ms or None
        )
        logger.debug("confirmation_check_dispatched", request_id=request_id, delay_ms=delay_ms)
