"""
ReconciliationService
Sweeps submission records and the read cache for work lost between queue, database and chain
"""

from typing import Dict, List, Any
from datetime import timedelta
from sqlalchemy.orm import sessionmaker
import structlog

from tradechain.database import utcnow
from tradechain.models.reconciliation_report import ReconciliationReport
from tradechain.models.write_request import LogicalKey, SubmissionStatus
from tradechain.services.errors import CoordinatorError

logger = structlog.get_logger(__name__)

SWEEP_BATCH_SIZE = 200


class ReconciliationService:
    """
    Reconciliation sweep for the write coordinator.

    Runs five operations per cycle:
    1. Re-dispatch pending records whose queue message was lost
    2. Re-check submitted records whose confirmation poll was lost
    3. Archive terminal records that were never archived
    4. Repair stale cache entries
    5. Purge archived records past the idempotency retention window
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        store,
        watcher,
        cache,
        dispatcher,
        stale_dispatch_seconds: int = 120,
        idempotency_ttl_hours: int = 24,
    ):
        """
        Initialize ReconciliationService.

        Args:
            session_factory: SQLAlchemy sessionmaker for the report rows
            store: FingerprintStore
            watcher: ChainWatcher used to re-check submitted records
            cache: ReadRepairCache
            dispatcher: dispatcher used to re-send lost submissions
            stale_dispatch_seconds: age after which a pending record counts as lost
            idempotency_ttl_hours: how long archived records are retained
        """
        self.session_factory = session_factory
        self.store = store
        self.watcher = watcher
        self.cache = cache
        self.dispatcher = dispatcher
        self.stale_after = timedelta(seconds=stale_dispatch_seconds)
        self.retention = timedelta(hours=idempotency_ttl_hours)

    def run_reconciliation(self) -> Dict[str, Any]:
        """
        Main entry point for reconciliation.

        Returns:
            dict: Summary of reconciliation run with counts and results
        """
        session = self.session_factory()

        try:
            report = ReconciliationReport(status='running', run_at=utcnow())
            session.add(report)
            session.commit()
            session.refresh(report)

            run_id = report.id
            logger.info("reconciliation_started", run_id=run_id)
            details: List[Dict[str, Any]] = []

            # Step 1: Lost submissions
            redispatched = self._redispatch_stale_pending(details)
            logger.info("redispatch_completed", run_id=run_id, redispatched=redispatched)

            # Step 2: Lost confirmation polls
            repolled = self._repoll_submitted(details)
            logger.info("repoll_completed", run_id=run_id, repolled=repolled)

            # Step 3: Unarchived terminal records
            archived = self._archive_terminal(details)
            logger.info("archive_completed", run_id=run_id, archived=archived)

            # Step 4: Stale cache entries
            cache_repaired = self._repair_stale_cache(details)
            logger.info("cache_repair_completed", run_id=run_id, cache_repaired=cache_repaired)

            # Step 5: Retention
            purged = self.store.purge_archived(utcnow() - self.retention)
            logger.info("purge_completed", run_id=run_id, purged=purged)

            report.completed_at = utcnow()
            report.redispatched = redispatched
            report.repolled = repolled
            report.archived = archived
            report.cache_repaired = cache_repaired
            report.purged = purged
            report.details = details
            report.status = 'completed'
            session.commit()

            summary = {
                'run_id': run_id,
                'status': 'completed',
                'redispatched': redispatched,
                'repolled': repolled,
                'archived': archived,
                'cache_repaired': cache_repaired,
                'purged': purged,
            }

            logger.info("reconciliation_completed", **summary)
            return summary

        except Exception as e:
            logger.error("reconciliation_crashed", error=str(e), exc_info=True)

            try:
                report.status = 'failed'
                report.error_message = str(e)
                report.completed_at = utcnow()
                session.commit()
            except Exception as report_error:
                logger.error("failed_to_update_report", error=str(report_error))

            raise

        finally:
            session.close()

    def _redispatch_stale_pending(self, details: List[Dict[str, Any]]) -> int:
        """
        Re-send pending records that have sat untouched past the stale window.

        Records still inside their retry backoff are left alone.
        """
        cutoff = utcnow() - self.stale_after
        stale = self.store.list_by_status(
            SubmissionStatus.PENDING,
            limit=SWEEP_BATCH_SIZE,
            updated_before=cutoff
        )

        count = 0
        for record in stale:
            if record.next_attempt_at is not None and record.next_attempt_at > cutoff:
                continue
            self.dispatcher.dispatch_submission(record.id)
            details.append({'type': 'redispatched', 'request_id': record.id, 'slot': record.slot})
            count += 1
        return count

    def _repoll_submitted(self, details: List[Dict[str, Any]]) -> int:
        """
        Run one confirmation check for submitted records past the stale window.

        The check runs inline; the sweep itself is the fallback poller, so no
        follow-up message is sent.
        """
        cutoff = utcnow() - self.stale_after
        stale = self.store.list_by_status(
            SubmissionStatus.SUBMITTED,
            limit=SWEEP_BATCH_SIZE,
            updated_before=cutoff
        )

        count = 0
        for record in stale:
            outcome = self.watcher.check_confirmation(record.id)
            details.append({
                'type': 'repolled',
                'request_id': record.id,
                'slot': record.slot,
                'status': outcome.status
            })
            count += 1
        return count

    def _archive_terminal(self, details: List[Dict[str, Any]]) -> int:
        """
        Archive confirmed and failed records that were not archived.

        A confirmed record that missed its archive step may also have missed
        the cache invalidation, so the cache entry is invalidated first.
        """
        count = 0
        for status in (SubmissionStatus.CONFIRMED, SubmissionStatus.FAILED):
            records = self.store.list_by_status(status, limit=SWEEP_BATCH_SIZE, archived=False)
            for record in records:
                if status == SubmissionStatus.CONFIRMED:
                    self.cache.invalidate(record.key, record.confirmed_block)
                if self.store.update_fields(record.id, status, archived_at=utcnow()):
                    details.append({'type': 'archived', 'request_id': record.id, 'slot': record.slot})
                    count += 1
        return count

    def _repair_stale_cache(self, details: List[Dict[str, Any]]) -> int:
        """Re-read stale cache entries from the chain. Failures are logged and left stale."""
        count = 0
        for entry in self.cache.list_stale(limit=SWEEP_BATCH_SIZE):
            key = LogicalKey.from_slot(entry.slot)
            try:
                self.cache.get(key)
            except CoordinatorError as e:
                logger.warning("cache_repair_failed", slot=entry.slot, error_kind=e.kind, error=e.message)
                details.append({'type': 'cache_repair_failed', 'slot': entry.slot, 'error_kind': e.kind})
                continue
            details.append({'type': 'cache_repaired', 'slot': entry.slot})
            count += 1
        return count
