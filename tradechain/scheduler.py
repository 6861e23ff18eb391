"""
APScheduler wiring for the reconciliation sweep.

The sweep runs in the API process on a BackgroundScheduler thread; workers
never schedule it. Overlapping runs are prevented (max_instances=1) and
missed runs collapse into one (coalesce).
"""

from datetime import timedelta

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tradechain.database import utcnow

logger = structlog.get_logger(__name__)

RECONCILIATION_JOB_ID = "submission_reconciliation"

# First sweep shortly after boot picks up work lost by the previous process
STARTUP_DELAY_SECONDS = 5


def run_scheduled_reconciliation(runtime) -> None:
    """
    Job body. A crashed sweep is logged (its report row is marked failed by
    the service) and the next interval runs normally.
    """
    try:
        result = runtime.reconciliation.run_reconciliation()
    except Exception as e:
        logger.error("reconciliation_crashed", error=str(e), exc_info=True)
        return

    if any(result.get(field) for field in ("redispatched", "repolled", "archived", "cache_repaired", "purged")):
        logger.info("scheduled_reconciliation_completed", **result)
    else:
        logger.debug("scheduled_reconciliation_idle", run_id=result.get("run_id"))


def start_scheduler(runtime, environment: str = "production", interval_seconds: int = 60) -> BackgroundScheduler:
    """
    Create the scheduler and, outside the testing environment, start it
    with the reconciliation job registered.

    Returns:
        The BackgroundScheduler (not running when environment is "testing")
    """
    scheduler = BackgroundScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    scheduler.add_job(
        run_scheduled_reconciliation,
        trigger=IntervalTrigger(seconds=interval_seconds),
        args=[runtime],
        id=RECONCILIATION_JOB_ID,
        name="Submission and cache reconciliation",
        next_run_time=utcnow() + timedelta(seconds=STARTUP_DELAY_SECONDS),
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("scheduler_started", job=RECONCILIATION_JOB_ID, interval_seconds=interval_seconds)

    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler) -> None:
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
