"""
Submission Queue
Accepts WriteRequests, enforces one in-flight write per logical key and hands work to the Chain Watcher
"""

import uuid
from typing import Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError

from tradechain.database import utcnow
from tradechain.models.submission_record import SubmissionRecord
from tradechain.models.write_request import SubmissionStatus, WriteRequest
from tradechain.services.errors import (
    CANCELLED_KIND,
    KeyBusy,
    NotCancellable,
    RecordNotFound,
)
from tradechain.services.fingerprint_store import FingerprintStore
from tradechain.services.validation import validate_payload

logger = structlog.get_logger(__name__)


class SubmissionQueue:
    """
    Front door for writes.

    enqueue() is safe to call concurrently from many request handlers: the
    partial unique index on the slot column guarantees that only one insert
    per key wins, and the losers re-resolve against the winner.

    Args:
        store: FingerprintStore holding SubmissionRecords
        dispatcher: object with dispatch_submission(request_id, delay_ms)
        nonce_manager: optional NonceManager, resynced when a cancelled
            record had a nonce allocated
    """

    def __init__(self, store: FingerprintStore, dispatcher, nonce_manager=None):
        self.store = store
        self.dispatcher = dispatcher
        self.nonce_manager = nonce_manager
        self.logger = logger.bind(service="submission_queue")

    def enqueue(self, request: WriteRequest) -> SubmissionRecord:
        """Accept a write. See submit() for the replay flag."""
        record, _ = self.submit(request)
        return record

    def submit(self, request: WriteRequest) -> Tuple[SubmissionRecord, bool]:
        """
        Accept a write and report whether it was a replay.

        Returns:
            (record, replayed) where replayed is True when the idempotency
            token matched an existing record and nothing new was dispatched

        Raises:
            InvalidPayload: payload or key fails validation
            KeyBusy: a different write is pending/submitted for the same key
        """
        payload = validate_payload(request.key, request.payload)

        existing = self._resolve_existing(request)
        if existing is not None:
            return existing, True

        record = SubmissionRecord(
            id=str(uuid.uuid4()),
            slot=request.key.slot,
            entity_id=request.key.entity_id,
            record_type=request.key.record_type.value,
            doc_type=request.key.doc_type,
            payload=payload,
            idempotency_token=request.idempotency_token,
            status=SubmissionStatus.PENDING.value,
            attempt=0,
            created_at=request.submitted_at,
            updated_at=request.submitted_at,
        )

        try:
            self.store.put(record)
        except IntegrityError:
            # A concurrent writer took the token or the slot between our
            # checks and the insert
            existing = self._resolve_existing(request)
            if existing is not None:
                return existing, True
            raise KeyBusy(f"Another write is in flight for {request.key.slot}")

        self.logger.info(
            "submission_enqueued",
            request_id=record.id,
            slot=record.slot,
            token=record.idempotency_token
        )
        self.dispatcher.dispatch_submission(record.id)
        return record, False

    def _resolve_existing(self, request):
        replay = self.store.get_by_token(request.idempotency_token)
        if replay is not None:
            self.logger.info("submission_replayed", request_id=replay.id, slot=replay.slot, status=replay.status)
            return replay

        active = self.store.get_active(request.key)
        if active is None:
            return None
        if active.idempotency_token == request.idempotency_token:
            # A concurrent caller with the same token inserted after the lookup above
            self.logger.info("submission_replayed", request_id=active.id, slot=active.slot, status=active.status)
            return active

        replay = self.store.get_by_token(request.idempotency_token)
        if replay is not None:
            self.logger.info("submission_replayed", request_id=replay.id, slot=replay.slot, status=replay.status)
            return replay

        self.logger.info("key_busy", slot=request.key.slot, in_flight=active.id)
        raise KeyBusy(f"A write for {request.key.slot} is already in flight", request_id=active.id)

    def cancel(self, request_id: str) -> SubmissionRecord:
        """
        Cancel a write that has not been broadcast yet.

        Raises:
            RecordNotFound: unknown request id
            NotCancellable: the record is no longer pending
        """
        record = self.store.get(request_id)
        if record is None:
            raise RecordNotFound(f"Submission {request_id} not found")

        swapped = self.store.compare_and_swap(
            request_id,
            SubmissionStatus.PENDING,
            SubmissionStatus.FAILED,
            error_kind=CANCELLED_KIND,
            last_error="Cancelled before broadcast",
            next_attempt_at=None,
            archived_at=utcnow(),
        )
        if not swapped:
            current = self.store.get(request_id)
            status = current.status if current else "missing"
            raise NotCancellable(f"Submission {request_id} is {status} and can no longer be cancelled")

        if record.nonce is not None and record.signer and self.nonce_manager is not None:
            self.nonce_manager.resync(record.signer)

        self.logger.info("submission_cancelled", request_id=request_id, slot=record.slot)
        return self.store.get(request_id)
