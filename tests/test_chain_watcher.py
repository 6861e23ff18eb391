"""
Tests for ChainWatcher

Tests cover:
- Happy path: pending -> submitted -> confirmed, cache invalidated
- Confirmation depth and timeout
- Retryable failures: backoff, nonce reuse, exhaustion
- Fatal failures: revert, insufficient funds
- Nonce conflicts and abandoned nonces
- Races with cancellation and duplicate messages
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from tradechain.database import utcnow
from tradechain.models.write_request import LogicalKey, SubmissionStatus, WriteRequest
from tradechain.services.chain_watcher import (
    STEP_CONFIRM,
    STEP_SUBMIT,
    ChainWatcher,
    WatchOutcome,
    backoff_ms,
    follow_up,
)
from tradechain.services.errors import (
    ContractConfigError,
    InsufficientFunds,
    NonceConflict,
    NotCancellable,
    RecordNotFound,
    Reverted,
    TransientChainError,
    UpstreamUnavailable,
)

CID_A = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"
CID_B = "QmT78zSuBmuS4z925WZfrqQ1qHaJ56DQaTfyMUF7F8ff5o"


@pytest.fixture
def pending(queue):
    """A freshly enqueued document write."""
    return queue.enqueue(WriteRequest(
        key=LogicalKey.document(1, 0),
        payload={"cid": CID_A},
        idempotency_token="token-1",
    ))


def clear_backoff(store, request_id):
    store.update_fields(request_id, SubmissionStatus.PENDING, next_attempt_at=None)


class TestHelpers:
    """Backoff and follow-up dispatch."""

    def test_backoff_doubles_and_caps(self):
        assert backoff_ms(0, 1000, 60000) == 1000
        assert backoff_ms(1, 1000, 60000) == 2000
        assert backoff_ms(3, 1000, 60000) == 8000
        assert backoff_ms(10, 1000, 60000) == 60000

    def test_follow_up_routes_by_step(self, dispatcher):
        follow_up(WatchOutcome("a", "pending", STEP_SUBMIT, 500), dispatcher)
        follow_up(WatchOutcome("b", "submitted", STEP_CONFIRM, 3000), dispatcher)
        follow_up(WatchOutcome("c", "confirmed"), dispatcher)

        assert dispatcher.submissions == [("a", 500)]
        assert dispatcher.confirmations == [("b", 3000)]

    def test_done_flag(self):
        assert WatchOutcome("a", "confirmed").done
        assert not WatchOutcome("a", "submitted", STEP_CONFIRM).done


class TestHappyPath:
    """pending -> submitted -> confirmed."""

    def test_submit_broadcasts_and_moves_to_submitted(self, watcher, store, chain, pending):
        outcome = watcher.submit(pending.id)

        assert outcome.status == SubmissionStatus.SUBMITTED.value
        assert outcome.next_step == STEP_CONFIRM
        assert outcome.delay_ms == 3000

        record = store.get(pending.id)
        assert record.status == SubmissionStatus.SUBMITTED.value
        assert record.nonce == 0
        assert record.signer == chain.signer_address
        assert record.tx_hash == chain.broadcasts[0].tx_hash
        assert record.submitted_at is not None

        call, nonce = chain.signed[record.tx_hash]
        assert call.function == "storeDocument"
        assert call.args == (1, 0, CID_A)

    def test_carbon_emission_call(self, watcher, queue, chain):
        record = queue.enqueue(WriteRequest(
            key=LogicalKey.carbon_emission(3),
            payload={"total_emissions": 1500},
            idempotency_token="carbon-1",
        ))
        watcher.submit(record.id)

        call, _ = chain.signed[chain.broadcasts[0].tx_hash]
        assert call.function == "setCarbonEmission"
        assert call.args == (3, 1500, "kgCO2e")

    def test_confirmation_after_mining(self, watcher, store, chain, cache, pending):
        watcher.submit(pending.id)
        tx_hash = store.get(pending.id).tx_hash

        waiting = watcher.check_confirmation(pending.id)
        assert waiting.next_step == STEP_CONFIRM
        assert waiting.status == SubmissionStatus.SUBMITTED.value

        block = chain.mine(tx_hash)
        outcome = watcher.check_confirmation(pending.id)

        assert outcome.status == SubmissionStatus.CONFIRMED.value
        assert outcome.done
        record = store.get(pending.id)
        assert record.confirmed_block == block
        assert record.confirmed_at is not None
        assert record.archived_at is not None
        assert record.to_dict()["outcome"] == "landed"
        assert cache.get(LogicalKey.document(1, 0))["cid"] == CID_A

    def test_confirmation_invalidates_cached_value(self, watcher, queue, store, chain, cache):
        """A read after confirmation reflects the new value, never the old one."""
        key = LogicalKey.document(1, 0)
        chain.set_value(key, {"cid": CID_A, "uploaded_by": chain.signer_address, "timestamp": 1})
        assert cache.get(key)["cid"] == CID_A

        record = queue.enqueue(WriteRequest(key=key, payload={"cid": CID_B}, idempotency_token="token-2"))
        watcher.submit(record.id)
        chain.mine(store.get(record.id).tx_hash)
        watcher.check_confirmation(record.id)

        assert cache.peek(key).stale is True
        assert cache.get(key)["cid"] == CID_B

    def test_confirmation_depth(self, make_watcher, store, chain, pending):
        watcher = make_watcher(confirmation_depth=3)
        watcher.submit(pending.id)
        chain.mine(store.get(pending.id).tx_hash)

        assert watcher.check_confirmation(pending.id).next_step == STEP_CONFIRM
        chain.advance(1)
        assert watcher.check_confirmation(pending.id).next_step == STEP_CONFIRM
        chain.advance(1)
        assert watcher.check_confirmation(pending.id).status == SubmissionStatus.CONFIRMED.value

    def test_sequential_writes_use_sequential_nonces(self, watcher, queue, store, chain):
        ids = []
        for doc_type in range(3):
            record = queue.enqueue(WriteRequest(
                key=LogicalKey.document(1, doc_type),
                payload={"cid": CID_A},
                idempotency_token=f"token-{doc_type}",
            ))
            watcher.submit(record.id)
            ids.append(record.id)

        assert [store.get(i).nonce for i in ids] == [0, 1, 2]


class TestIdempotentSteps:
    """Duplicate and late messages."""

    def test_second_submit_is_noop(self, watcher, chain, pending):
        watcher.submit(pending.id)
        outcome = watcher.submit(pending.id)

        assert outcome.done
        assert outcome.status == SubmissionStatus.SUBMITTED.value
        assert len(chain.broadcasts) == 1

    def test_missing_record(self, watcher):
        assert watcher.submit("missing") == WatchOutcome("missing", None)
        assert watcher.check_confirmation("missing") == WatchOutcome("missing", None)

    def test_confirmation_check_on_pending_is_noop(self, watcher, pending):
        outcome = watcher.check_confirmation(pending.id)
        assert outcome.done
        assert outcome.status == SubmissionStatus.PENDING.value

    def test_submit_inside_backoff_waits(self, watcher, store, pending):
        store.update_fields(pending.id, SubmissionStatus.PENDING, next_attempt_at=utcnow() + timedelta(seconds=5))

        outcome = watcher.submit(pending.id)

        assert outcome.next_step == STEP_SUBMIT
        assert 0 < outcome.delay_ms <= 5001

    def test_missing_signer_is_config_error(self, watcher, chain, pending):
        chain.signer_address = None
        with pytest.raises(ContractConfigError):
            watcher.submit(pending.id)


class TestRetries:
    """Retryable failures."""

    def test_broadcast_failure_returns_to_pending(self, watcher, store, chain, pending):
        chain.broadcast_errors.append(TransientChainError("header not found"))

        outcome = watcher.submit(pending.id)

        assert outcome.status == SubmissionStatus.PENDING.value
        assert outcome.next_step == STEP_SUBMIT
        assert outcome.delay_ms == 1000
        record = store.get(pending.id)
        assert record.status == SubmissionStatus.PENDING.value
        assert record.attempt == 1
        assert record.error_kind == "transient_chain_error"
        assert record.next_attempt_at is not None

    def test_retry_reuses_nonce(self, watcher, store, chain, pending):
        """A retried write keeps its nonce so at most one transaction can land."""
        chain.broadcast_errors.append(UpstreamUnavailable("RPC endpoint unreachable"))
        watcher.submit(pending.id)
        clear_backoff(store, pending.id)

        outcome = watcher.submit(pending.id)

        assert outcome.next_step == STEP_CONFIRM
        assert len(chain.broadcasts) == 1
        assert chain.broadcasts[0].nonce == 0
        assert store.get(pending.id).nonce == 0

    def test_backoff_grows_with_attempts(self, watcher, store, chain, pending):
        chain.broadcast_errors.extend([TransientChainError("a"), TransientChainError("b")])

        first = watcher.submit(pending.id)
        clear_backoff(store, pending.id)
        second = watcher.submit(pending.id)

        assert (first.delay_ms, second.delay_ms) == (1000, 2000)
        assert store.get(pending.id).attempt == 2

    def test_attempts_exhausted(self, make_watcher, store, chain, nonce_manager, pending):
        watcher = make_watcher(max_attempts=2)
        chain.broadcast_errors.extend([TransientChainError("a"), TransientChainError("b")])

        watcher.submit(pending.id)
        clear_backoff(store, pending.id)
        outcome = watcher.submit(pending.id)

        assert outcome.done
        assert outcome.status == SubmissionStatus.FAILED.value
        record = store.get(pending.id)
        assert record.attempt == 2
        assert record.error_kind == "transient_chain_error"
        assert record.last_error.startswith("Gave up after 2 attempts")
        assert record.archived_at is not None
        assert nonce_manager.peek(chain.signer_address) == 0

    def test_previous_broadcast_detected(self, watcher, store, chain, pending):
        """A broadcast that reached the node despite an error is not sent again."""
        chain.broadcast_errors.append(TransientChainError("timeout"))
        watcher.submit(pending.id)
        record = store.get(pending.id)
        chain.mempool.add(record.tx_hash)
        clear_backoff(store, pending.id)

        outcome = watcher.submit(pending.id)

        assert outcome.next_step == STEP_CONFIRM
        assert chain.broadcasts == []
        assert store.get(pending.id).status == SubmissionStatus.SUBMITTED.value
        assert store.get(pending.id).tx_hash == record.tx_hash

    def test_nonce_conflict_takes_fresh_nonce(self, watcher, store, chain, pending):
        chain.broadcast_errors.append(NonceConflict("nonce too low"))
        watcher.submit(pending.id)

        record = store.get(pending.id)
        assert record.status == SubmissionStatus.PENDING.value
        assert record.error_kind == "nonce_conflict"
        assert record.nonce is None
        assert record.tx_hash is None

        # Nonce 0 was consumed outside the service
        chain.confirmed_count = 1
        clear_backoff(store, pending.id)
        watcher.submit(pending.id)

        assert store.get(pending.id).nonce == 1
        assert chain.broadcasts[0].nonce == 1

    def test_consumed_nonce_is_not_reused(self, watcher, store, chain, pending):
        chain.broadcast_errors.append(TransientChainError("timeout"))
        watcher.submit(pending.id)
        chain.confirmed_count = 1
        clear_backoff(store, pending.id)

        watcher.submit(pending.id)

        assert store.get(pending.id).nonce == 1

    def test_transient_sign_failure_keeps_nonce(self, watcher, store, chain, pending):
        chain.sign_errors.append(TransientChainError("gas estimation timed out"))

        outcome = watcher.submit(pending.id)

        assert outcome.next_step == STEP_SUBMIT
        record = store.get(pending.id)
        assert record.status == SubmissionStatus.PENDING.value
        assert record.nonce == 0
        assert record.signer == chain.signer_address

        clear_backoff(store, pending.id)
        watcher.submit(pending.id)
        assert chain.broadcasts[0].nonce == 0


class TestFatalFailures:
    """Non-retryable failures."""

    def test_revert_at_signing_fails_and_frees_nonce(self, watcher, store, chain, nonce_manager, pending):
        chain.sign_errors.append(Reverted("execution reverted: Invalid doc type"))

        outcome = watcher.submit(pending.id)

        assert outcome.done
        record = store.get(pending.id)
        assert record.status == SubmissionStatus.FAILED.value
        assert record.error_kind == "reverted"
        assert record.archived_at is not None
        assert chain.broadcasts == []
        assert nonce_manager.peek(chain.signer_address) == 0

    def test_revert_at_signing_keeps_unbroadcast_nonce_reserved(self, watcher, queue, store, chain, nonce_manager):
        """
        A write that reverts at signing resyncs the sequence while another
        record has moved to submitted but not broadcast yet; the next write
        must not be handed that record's nonce.
        """
        first, reverting, second = [
            queue.enqueue(WriteRequest(
                key=LogicalKey.document(1, doc_type),
                payload={"cid": CID_A},
                idempotency_token=f"token-{doc_type}",
            ))
            for doc_type in range(3)
        ]
        real_broadcast = chain.broadcast

        def broadcast_after_others(signed):
            chain.broadcast = real_broadcast
            assert store.get(first.id).status == SubmissionStatus.SUBMITTED.value
            chain.sign_errors.append(Reverted("execution reverted: Invalid doc type"))
            assert watcher.submit(reverting.id).status == SubmissionStatus.FAILED.value
            assert nonce_manager.peek(chain.signer_address) == 1
            watcher.submit(second.id)
            return real_broadcast(signed)

        chain.broadcast = broadcast_after_others
        watcher.submit(first.id)

        assert sorted(signed.nonce for signed in chain.broadcasts) == [0, 1]
        assert store.get(first.id).nonce == 0
        assert store.get(second.id).nonce == 1
        assert nonce_manager.peek(chain.signer_address) == 2

    def test_allocated_nonce_held_by_pending_record_is_skipped(self, watcher, queue, store, chain, pending):
        """A pending record keeps the nonce it signed with; new allocations step over it."""
        holder = queue.enqueue(WriteRequest(
            key=LogicalKey.document(1, 1),
            payload={"cid": CID_B},
            idempotency_token="token-holder",
        ))
        store.update_fields(holder.id, SubmissionStatus.PENDING, nonce=0, signer=chain.signer_address)

        watcher.submit(pending.id)

        assert chain.broadcasts[0].nonce == 1
        assert store.get(pending.id).nonce == 1

    def test_insufficient_funds_at_broadcast(self, watcher, store, chain, pending):
        chain.broadcast_errors.append(InsufficientFunds("insufficient funds for gas * price + value"))

        outcome = watcher.submit(pending.id)

        assert outcome.status == SubmissionStatus.FAILED.value
        record = store.get(pending.id)
        assert record.error_kind == "insufficient_funds"
        assert record.attempt == 0
        assert record.to_dict()["outcome"] == "not_landed"

    def test_reverted_receipt(self, watcher, store, chain, cache, pending):
        watcher.submit(pending.id)
        block = chain.mine(store.get(pending.id).tx_hash, status=0)

        outcome = watcher.check_confirmation(pending.id)

        assert outcome.status == SubmissionStatus.FAILED.value
        record = store.get(pending.id)
        assert record.error_kind == "reverted"
        assert record.confirmed_block == block
        with pytest.raises(RecordNotFound):
            cache.get(LogicalKey.document(1, 0))

    def test_confirmation_timeout(self, watcher, store, pending):
        watcher.submit(pending.id)
        store.update_fields(pending.id, SubmissionStatus.SUBMITTED, submitted_at=utcnow() - timedelta(seconds=301))

        outcome = watcher.check_confirmation(pending.id)

        assert outcome.status == SubmissionStatus.FAILED.value
        record = store.get(pending.id)
        assert record.error_kind == "confirmation_timeout"
        assert record.to_dict()["outcome"] == "unknown"

    def test_mined_transaction_ignores_timeout(self, make_watcher, store, chain, pending):
        """Once a receipt exists the record waits for depth, not the timeout."""
        watcher = make_watcher(confirmation_depth=2)
        watcher.submit(pending.id)
        chain.mine(store.get(pending.id).tx_hash)
        store.update_fields(pending.id, SubmissionStatus.SUBMITTED, submitted_at=utcnow() - timedelta(seconds=900))

        assert watcher.check_confirmation(pending.id).next_step == STEP_CONFIRM
        chain.advance(1)
        assert watcher.check_confirmation(pending.id).status == SubmissionStatus.CONFIRMED.value

    def test_receipt_poll_error_keeps_polling(self, watcher, store, chain, pending):
        watcher.submit(pending.id)
        chain.receipt_errors.append(UpstreamUnavailable("RPC circuit open"))

        outcome = watcher.check_confirmation(pending.id)

        assert outcome.next_step == STEP_CONFIRM
        assert store.get(pending.id).status == SubmissionStatus.SUBMITTED.value


class TestCancellationRaces:
    """Cancellation interleaved with the watcher."""

    def test_cancelled_record_is_not_broadcast(self, watcher, queue, chain, pending):
        queue.cancel(pending.id)

        outcome = watcher.submit(pending.id)

        assert outcome.status == SubmissionStatus.FAILED.value
        assert chain.broadcasts == []

    def test_cancel_during_signing_wins(self, watcher, queue, store, chain, nonce_manager, pending):
        """Cancel lands between nonce allocation and the submitted swap."""
        chain.on_sign = lambda: queue.cancel(pending.id)

        outcome = watcher.submit(pending.id)

        assert outcome.status == SubmissionStatus.FAILED.value
        assert store.get(pending.id).error_kind == "cancelled"
        assert chain.broadcasts == []
        assert nonce_manager.peek(chain.signer_address) == 0

    def test_cancel_after_broadcast_refused(self, watcher, queue, pending):
        watcher.submit(pending.id)
        with pytest.raises(NotCancellable):
            queue.cancel(pending.id)


class TestFromSettings:
    def test_from_settings(self, test_settings, store, chain, nonce_manager):
        watcher = ChainWatcher.from_settings(test_settings, store, chain, nonce_manager, Mock())
        assert watcher.confirmation_depth == test_settings.confirmation_depth
        assert watcher.max_attempts == test_settings.max_attempts
        assert watcher.poll_interval_ms == test_settings.confirmation_poll_interval_ms
