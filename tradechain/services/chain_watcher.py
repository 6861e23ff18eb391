"""
Chain Watcher
Drives SubmissionRecords through pending -> submitted -> confirmed | failed against the contract
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog

from tradechain.database import utcnow
from tradechain.models.submission_record import SubmissionRecord
from tradechain.models.write_request import SubmissionStatus
from tradechain.services.chain_client import ChainClient, call_for
from tradechain.services.errors import (
    ConfirmationTimeout,
    ContractConfigError,
    CoordinatorError,
    NonceConflict,
    Reverted,
    TransientChainError,
)
from tradechain.services.fingerprint_store import FingerprintStore
from tradechain.services.nonce_manager import NonceManager

logger = structlog.get_logger(__name__)

STEP_SUBMIT = "submit"
STEP_CONFIRM = "confirm"


@dataclass(frozen=True)
class WatchOutcome:
    """
    Result of one watcher step.

    next_step is STEP_SUBMIT, STEP_CONFIRM or None (nothing left to do);
    delay_ms is how long the follow-up message should wait.
    """
    request_id: str
    status: Optional[str]
    next_step: Optional[str] = None
    delay_ms: int = 0

    @property
    def done(self) -> bool:
        return self.next_step is None


def backoff_ms(attempt: int, min_backoff_ms: int, max_backoff_ms: int) -> int:
    """Exponential backoff for the given zero-based attempt, capped."""
    return min(min_backoff_ms * (2 ** attempt), max_backoff_ms)


def follow_up(outcome: WatchOutcome, dispatcher) -> None:
    """Schedule the next watcher step for an outcome, if any."""
    if outcome.next_step == STEP_SUBMIT:
        dispatcher.dispatch_submission(outcome.request_id, outcome.delay_ms)
    elif outcome.next_step == STEP_CONFIRM:
        dispatcher.dispatch_confirmation_check(outcome.request_id, outcome.delay_ms)


class ChainWatcher:
    """
    Only component that moves records past 'pending'.

    Every transition is a compare-and-swap on the record's status, so any
    number of worker threads and processes may run the same step for the same
    record; exactly one of them performs the transition and the rest back off.

    Args:
        store: FingerprintStore
        chain: ChainClient (or anything exposing the same surface)
        nonce_manager: NonceManager for the signing account
        cache: ReadRepairCache, invalidated when a write confirms
        confirmation_depth: blocks required, counting the inclusion block
        confirmation_timeout_seconds: wait for a receipt before giving up
        poll_interval_ms: delay between confirmation checks
        max_attempts: broadcast attempts before a record fails
        min_backoff_ms / max_backoff_ms: retry backoff bounds
    """

    def __init__(
        self,
        store: FingerprintStore,
        chain: ChainClient,
        nonce_manager: NonceManager,
        cache,
        confirmation_depth: int = 1,
        confirmation_timeout_seconds: int = 300,
        poll_interval_ms: int = 3000,
        max_attempts: int = 5,
        min_backoff_ms: int = 1000,
        max_backoff_ms: int = 60000,
    ):
        self.store = store
        self.chain = chain
        self.nonce_manager = nonce_manager
        self.cache = cache
        self.confirmation_depth = max(1, confirmation_depth)
        self.confirmation_timeout = timedelta(seconds=confirmation_timeout_seconds)
        self.poll_interval_ms = poll_interval_ms
        self.max_attempts = max_attempts
        self.min_backoff_ms = min_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.logger = logger.bind(service="chain_watcher")

    @classmethod
    def from_settings(cls, config, store, chain, nonce_manager, cache) -> "ChainWatcher":
        return cls(
            store=store,
            chain=chain,
            nonce_manager=nonce_manager,
            cache=cache,
            confirmation_depth=config.confirmation_depth,
            confirmation_timeout_seconds=config.confirmation_timeout_seconds,
            poll_interval_ms=config.confirmation_poll_interval_ms,
            max_attempts=config.max_attempts,
            min_backoff_ms=config.retry_min_backoff_ms,
            max_backoff_ms=config.retry_max_backoff_ms,
        )

    # ------------------------------------------------------------------
    # pending -> submitted
    # ------------------------------------------------------------------

    def submit(self, request_id: str) -> WatchOutcome:
        """
        Sign and broadcast the transaction for a pending record.

        The record moves to 'submitted' before the broadcast, so a crash after
        the broadcast leaves a record the confirmation check can still find.
        """
        record = self.store.get(request_id)
        if record is None:
            self.logger.warning("submit_record_missing", request_id=request_id)
            return WatchOutcome(request_id, None)

        if record.status != SubmissionStatus.PENDING.value:
            self.logger.info("submit_skipped", request_id=request_id, status=record.status)
            return WatchOutcome(request_id, record.status)

        now = utcnow()
        if record.next_attempt_at is not None and record.next_attempt_at > now:
            wait_ms = int((record.next_attempt_at - now).total_seconds() * 1000) + 1
            return WatchOutcome(request_id, record.status, STEP_SUBMIT, wait_ms)

        log = self.logger.bind(request_id=request_id, slot=record.slot, attempt=record.attempt)
        signer = self.chain.signer_address
        if signer is None:
            raise ContractConfigError("PRIVATE_KEY not configured - cannot sign transactions")

        # A previous broadcast may have reached the node before the error
        if record.tx_hash and record.signer == signer and record.nonce is not None:
            try:
                if self.chain.transaction_known(record.tx_hash):
                    if self.store.compare_and_swap(
                        request_id,
                        SubmissionStatus.PENDING,
                        SubmissionStatus.SUBMITTED,
                        next_attempt_at=None,
                    ):
                        log.info("previous_broadcast_found", tx_hash=record.tx_hash)
                        return WatchOutcome(request_id, SubmissionStatus.SUBMITTED.value, STEP_CONFIRM, self.poll_interval_ms)
                    return self._current(request_id)
            except CoordinatorError as e:
                return self._retry_pending(record, e, log)

        nonce = None
        try:
            nonce, fresh = self._choose_nonce(record, signer)
            # Held by the record from here on, so a resync elsewhere skips it
            if fresh and not self.store.update_fields(request_id, SubmissionStatus.PENDING, nonce=nonce, signer=signer, tx_hash=None):
                self.nonce_manager.resync(signer)
                log.info("submit_lost_race", nonce=nonce)
                return self._current(request_id)
            signed = self.chain.sign_call(call_for(record.key, record.payload), nonce)
        except CoordinatorError as e:
            return self._fail_before_broadcast(record, e, signer, nonce, log)

        swapped = self.store.compare_and_swap(
            request_id,
            SubmissionStatus.PENDING,
            SubmissionStatus.SUBMITTED,
            tx_hash=signed.tx_hash,
            signer=signer,
            nonce=nonce,
            submitted_at=now,
            next_attempt_at=None,
        )
        if not swapped:
            # Cancelled, or another worker got there first
            if fresh:
                self.nonce_manager.resync(signer)
            log.info("submit_lost_race", nonce=nonce)
            return self._current(request_id)

        try:
            self.chain.broadcast(signed)
        except CoordinatorError as e:
            return self._handle_broadcast_failure(record, e, signer, log)

        log.info("transaction_broadcast", tx_hash=signed.tx_hash, nonce=nonce)
        return WatchOutcome(request_id, SubmissionStatus.SUBMITTED.value, STEP_CONFIRM, self.poll_interval_ms)

    def _choose_nonce(self, record: SubmissionRecord, signer: str):
        """
        Reuse the record's nonce unless it is missing, already consumed on
        chain, or held by another active record. A freshly allocated nonce
        that another active record still holds is skipped.

        Returns:
            (nonce, fresh) where fresh is True for a newly allocated nonce
        """
        if record.nonce is not None and record.signer == signer:
            if record.nonce >= self.chain.confirmed_nonce(signer):
                if self.store.nonce_in_flight(signer, record.nonce, exclude_id=record.id) is None:
                    return record.nonce, False
                self.logger.warning("nonce_held_elsewhere", request_id=record.id, nonce=record.nonce)

        while True:
            nonce = self.nonce_manager.allocate(signer)
            holder = self.store.nonce_in_flight(signer, nonce, exclude_id=record.id)
            if holder is None:
                return nonce, True
            self.logger.warning("allocated_nonce_held", request_id=record.id, nonce=nonce, holder=holder.id)

    def _fail_before_broadcast(self, record, error, signer, nonce, log) -> WatchOutcome:
        """Build or signing failed while the record is still pending."""
        if error.retryable:
            changes = {}
            if nonce is not None and not isinstance(error, NonceConflict):
                changes.update(nonce=nonce, signer=signer)
            return self._retry_pending(record, error, log, **changes)

        self.store.compare_and_swap(
            record.id,
            SubmissionStatus.PENDING,
            SubmissionStatus.FAILED,
            error_kind=error.kind,
            last_error=error.message,
            next_attempt_at=None,
            archived_at=utcnow(),
        )
        if nonce is not None:
            self.nonce_manager.resync(signer)
        log.warning("submission_failed", error_kind=error.kind, error=error.message)
        return self._current(record.id)

    def _retry_pending(self, record, error, log, **changes) -> WatchOutcome:
        """Record a retryable failure on a still-pending record."""
        signer = self.chain.signer_address
        attempt = record.attempt + 1
        if isinstance(error, NonceConflict):
            changes.update(nonce=None, tx_hash=None)

        if attempt >= self.max_attempts:
            self.store.compare_and_swap(
                record.id,
                SubmissionStatus.PENDING,
                SubmissionStatus.FAILED,
                attempt=attempt,
                error_kind=TransientChainError.kind,
                last_error=f"Gave up after {attempt} attempts: {error.message}",
                next_attempt_at=None,
                archived_at=utcnow(),
                **changes
            )
            log.warning("submission_attempts_exhausted", error_kind=error.kind, error=error.message)
            self.nonce_manager.resync(signer)
            return self._current(record.id)

        delay = backoff_ms(record.attempt, self.min_backoff_ms, self.max_backoff_ms)
        self.store.update_fields(
            record.id,
            SubmissionStatus.PENDING,
            attempt=attempt,
            error_kind=error.kind,
            last_error=error.message,
            next_attempt_at=utcnow() + timedelta(milliseconds=delay),
            **changes
        )
        if isinstance(error, NonceConflict):
            self.nonce_manager.resync(signer)
        log.info("submission_retry_scheduled", error_kind=error.kind, delay_ms=delay)
        return WatchOutcome(record.id, SubmissionStatus.PENDING.value, STEP_SUBMIT, delay)

    def _handle_broadcast_failure(self, record, error, signer, log) -> WatchOutcome:
        """Broadcast failed after the record moved to submitted."""
        if not error.retryable:
            self.store.compare_and_swap(
                record.id,
                SubmissionStatus.SUBMITTED,
                SubmissionStatus.FAILED,
                error_kind=error.kind,
                last_error=error.message,
                archived_at=utcnow(),
            )
            self.nonce_manager.resync(signer)
            log.warning("submission_failed", error_kind=error.kind, error=error.message)
            return self._current(record.id)

        attempt = record.attempt + 1
        changes = {}
        if isinstance(error, NonceConflict):
            changes.update(nonce=None, tx_hash=None)

        if attempt >= self.max_attempts:
            self.store.compare_and_swap(
                record.id,
                SubmissionStatus.SUBMITTED,
                SubmissionStatus.FAILED,
                attempt=attempt,
                error_kind=TransientChainError.kind,
                last_error=f"Gave up after {attempt} attempts: {error.message}",
                archived_at=utcnow(),
                **changes
            )
            log.warning("submission_attempts_exhausted", error_kind=error.kind, error=error.message)
            self.nonce_manager.resync(signer)
            return self._current(record.id)

        delay = backoff_ms(record.attempt, self.min_backoff_ms, self.max_backoff_ms)
        self.store.compare_and_swap(
            record.id,
            SubmissionStatus.SUBMITTED,
            SubmissionStatus.PENDING,
            attempt=attempt,
            error_kind=error.kind,
            last_error=error.message,
            next_attempt_at=utcnow() + timedelta(milliseconds=delay),
            **changes
        )
        if isinstance(error, NonceConflict):
            self.nonce_manager.resync(signer)
        log.info("broadcast_retry_scheduled", error_kind=error.kind, delay_ms=delay)
        return WatchOutcome(record.id, SubmissionStatus.PENDING.value, STEP_SUBMIT, delay)

    # ------------------------------------------------------------------
    # submitted -> confirmed | failed
    # ------------------------------------------------------------------

    def check_confirmation(self, request_id: str) -> WatchOutcome:
        """
        Poll the receipt of a submitted record.

        The confirmation timeout only applies while no receipt exists; once
        the transaction is mined the record waits for the configured depth.
        """
        record = self.store.get(request_id)
        if record is None:
            self.logger.warning("confirmation_record_missing", request_id=request_id)
            return WatchOutcome(request_id, None)

        if record.status != SubmissionStatus.SUBMITTED.value:
            return WatchOutcome(request_id, record.status)

        log = self.logger.bind(request_id=request_id, slot=record.slot, tx_hash=record.tx_hash)

        try:
            receipt = self.chain.get_receipt(record.tx_hash) if record.tx_hash else None
            head = self.chain.block_number() if receipt is not None else None
        except CoordinatorError as e:
            log.warning("confirmation_poll_failed", error_kind=e.kind, error=e.message)
            return WatchOutcome(request_id, record.status, STEP_CONFIRM, self.poll_interval_ms)

        now = utcnow()
        if receipt is None:
            started = record.submitted_at or record.updated_at
            if now - started > self.confirmation_timeout:
                error = ConfirmationTimeout(
                    f"No receipt for {record.tx_hash} after {int(self.confirmation_timeout.total_seconds())}s"
                )
                self.store.compare_and_swap(
                    request_id,
                    SubmissionStatus.SUBMITTED,
                    SubmissionStatus.FAILED,
                    error_kind=error.kind,
                    last_error=error.message,
                    archived_at=now,
                )
                log.warning("confirmation_timeout", error=error.message)
                return self._current(request_id)
            return WatchOutcome(request_id, record.status, STEP_CONFIRM, self.poll_interval_ms)

        if receipt.status == 0:
            error = Reverted(f"Transaction {record.tx_hash} reverted in block {receipt.block_number}")
            self.store.compare_and_swap(
                request_id,
                SubmissionStatus.SUBMITTED,
                SubmissionStatus.FAILED,
                error_kind=error.kind,
                last_error=error.message,
                confirmed_block=receipt.block_number,
                archived_at=now,
            )
            log.warning("transaction_reverted", block=receipt.block_number)
            return self._current(request_id)

        confirmations = head - receipt.block_number + 1
        if confirmations < self.confirmation_depth:
            log.debug("awaiting_confirmations", confirmations=confirmations, depth=self.confirmation_depth)
            return WatchOutcome(request_id, record.status, STEP_CONFIRM, self.poll_interval_ms)

        if not self.store.compare_and_swap(
            request_id,
            SubmissionStatus.SUBMITTED,
            SubmissionStatus.CONFIRMED,
            confirmed_block=receipt.block_number,
            confirmed_at=now,
            error_kind=None,
            last_error=None,
        ):
            return self._current(request_id)

        self.cache.invalidate(record.key, receipt.block_number)
        self.store.update_fields(request_id, SubmissionStatus.CONFIRMED, archived_at=utcnow())
        log.info("submission_confirmed", block=receipt.block_number, confirmations=confirmations)
        return WatchOutcome(request_id, SubmissionStatus.CONFIRMED.value)

    def _current(self, request_id: str) -> WatchOutcome:
        record = self.store.get(request_id)
        return WatchOutcome(request_id, record.status if record else None)
