"""
Fingerprint Store
SQLAlchemy-backed store of SubmissionRecords keyed by request id, logical key and idempotency token
"""

from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from tradechain.database import utcnow
from tradechain.models.submission_record import SubmissionRecord
from tradechain.models.write_request import ACTIVE_STATUSES, LogicalKey, SubmissionStatus

logger = structlog.get_logger(__name__)

ACTIVE_VALUES = tuple(s.value for s in ACTIVE_STATUSES)


class FingerprintStore:
    """
    Keyed store for SubmissionRecords.

    Every method opens and closes its own session, so one store instance can
    be shared by API handlers and worker threads. Records are returned
    detached (expire_on_commit=False on the factory).

    Status changes go through compare_and_swap: a single conditional UPDATE
    that only one concurrent caller can win.
    """

    def __init__(self, session_factory: sessionmaker):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker (not session - creates independent transactions)
        """
        self.session_factory = session_factory
        self.logger = logger.bind(service="fingerprint_store")

    def put(self, record: SubmissionRecord) -> SubmissionRecord:
        """
        Insert a new record.

        Raises:
            sqlalchemy.exc.IntegrityError: duplicate token or an active record
                already holds the slot
        """
        session = self.session_factory()
        try:
            session.add(record)
            session.commit()
            self.logger.info("record_stored", request_id=record.id, slot=record.slot, status=record.status)
            return record
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, request_id: str) -> Optional[SubmissionRecord]:
        session = self.session_factory()
        try:
            return session.get(SubmissionRecord, request_id)
        finally:
            session.close()

    def get_by_token(self, token: str) -> Optional[SubmissionRecord]:
        session = self.session_factory()
        try:
            return session.query(SubmissionRecord).filter(
                SubmissionRecord.idempotency_token == token
            ).first()
        finally:
            session.close()

    def get_active(self, key: LogicalKey) -> Optional[SubmissionRecord]:
        """Return the pending/submitted record for a key, if any."""
        session = self.session_factory()
        try:
            return session.query(SubmissionRecord).filter(
                SubmissionRecord.slot == key.slot,
                SubmissionRecord.status.in_(ACTIVE_VALUES)
            ).first()
        finally:
            session.close()

    def latest_confirmed(self, key: LogicalKey) -> Optional[SubmissionRecord]:
        """Return the confirmed record with the highest confirmation block for a key."""
        session = self.session_factory()
        try:
            return session.query(SubmissionRecord).filter(
                SubmissionRecord.slot == key.slot,
                SubmissionRecord.status == SubmissionStatus.CONFIRMED.value
            ).order_by(
                SubmissionRecord.confirmed_block.desc(),
                SubmissionRecord.confirmed_at.desc()
            ).first()
        finally:
            session.close()

    def delete(self, request_id: str) -> bool:
        session = self.session_factory()
        try:
            deleted = session.query(SubmissionRecord).filter(
                SubmissionRecord.id == request_id
            ).delete(synchronize_session=False)
            session.commit()
            if deleted:
                self.logger.info("record_deleted", request_id=request_id)
            return deleted > 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def compare_and_swap(
        self,
        request_id: str,
        expected: SubmissionStatus,
        new: SubmissionStatus,
        **changes
    ) -> bool:
        """
        Atomically move a record from `expected` to `new` status.

        Args:
            request_id: Record to transition
            expected: Status the record must currently have
            new: Target status
            **changes: Extra column values written in the same UPDATE

        Returns:
            True if this caller performed the transition, False if the record
            was missing or no longer in the expected status
        """
        values = dict(changes)
        values["status"] = new.value
        values["updated_at"] = utcnow()

        session = self.session_factory()
        try:
            result = session.execute(
                update(SubmissionRecord)
                .where(
                    SubmissionRecord.id == request_id,
                    SubmissionRecord.status == expected.value
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            swapped = result.rowcount == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if swapped:
            self.logger.info(
                "status_transition",
                request_id=request_id,
                from_status=expected.value,
                to_status=new.value
            )
        else:
            self.logger.info(
                "status_transition_lost",
                request_id=request_id,
                expected=expected.value,
                wanted=new.value
            )
        return swapped

    def update_fields(self, request_id: str, expected: SubmissionStatus, **changes) -> bool:
        """Update non-status columns while the record is still in `expected` status."""
        return self.compare_and_swap(request_id, expected, expected, **changes)

    def list_by_status(
        self,
        status: SubmissionStatus,
        limit: int = 100,
        updated_before: Optional[datetime] = None,
        archived: Optional[bool] = None,
    ) -> List[SubmissionRecord]:
        """List records in a status, oldest first (FIFO)."""
        session = self.session_factory()
        try:
            query = session.query(SubmissionRecord).filter(SubmissionRecord.status == status.value)
            if updated_before is not None:
                query = query.filter(SubmissionRecord.updated_at < updated_before)
            if archived is True:
                query = query.filter(SubmissionRecord.archived_at.isnot(None))
            elif archived is False:
                query = query.filter(SubmissionRecord.archived_at.is_(None))
            return query.order_by(SubmissionRecord.created_at).limit(limit).all()
        finally:
            session.close()

    def nonce_in_flight(self, signer: str, nonce: int, exclude_id: Optional[str] = None) -> Optional[SubmissionRecord]:
        """Return another pending or submitted record holding the same signer nonce, if any."""
        session = self.session_factory()
        try:
            query = session.query(SubmissionRecord).filter(
                SubmissionRecord.signer == signer,
                SubmissionRecord.nonce == nonce,
                SubmissionRecord.status.in_(ACTIVE_VALUES)
            )
            if exclude_id is not None:
                query = query.filter(SubmissionRecord.id != exclude_id)
            return query.first()
        finally:
            session.close()

    def count_by_status(self) -> dict:
        session = self.session_factory()
        try:
            return {
                status.value: session.query(SubmissionRecord).filter(
                    SubmissionRecord.status == status.value
                ).count()
                for status in SubmissionStatus
            }
        finally:
            session.close()

    def list_recent(self, status: Optional[SubmissionStatus] = None, limit: int = 50) -> List[SubmissionRecord]:
        session = self.session_factory()
        try:
            query = session.query(SubmissionRecord)
            if status is not None:
                query = query.filter(SubmissionRecord.status == status.value)
            return query.order_by(SubmissionRecord.created_at.desc()).limit(limit).all()
        finally:
            session.close()

    def purge_archived(self, archived_before: datetime) -> int:
        """Delete terminal records archived before the cutoff. Returns count deleted."""
        session = self.session_factory()
        try:
            deleted = session.query(SubmissionRecord).filter(
                SubmissionRecord.archived_at.isnot(None),
                SubmissionRecord.archived_at < archived_before,
                ~SubmissionRecord.status.in_(ACTIVE_VALUES)
            ).delete(synchronize_session=False)
            session.commit()
            return deleted
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
