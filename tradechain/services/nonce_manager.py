"""
Nonce Manager
Central nonce allocation for the single signing account shared by all Chain Watcher workers
"""

import threading
from typing import Callable

import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from tradechain.database import utcnow
from tradechain.models.signer_nonce import SignerNonce
from tradechain.models.submission_record import SubmissionRecord
from tradechain.models.write_request import ACTIVE_STATUSES

logger = structlog.get_logger(__name__)

MAX_CAS_ATTEMPTS = 20


class NonceManager:
    """
    Serializes nonce allocation for a signer.

    The next nonce lives in the signer_nonces table so that worker processes
    share one sequence; a process-local lock keeps threads of one worker from
    contending on the row. Allocation is a compare-and-swap on next_nonce.

    Args:
        session_factory: SQLAlchemy sessionmaker
        chain_pending_nonce: callable(address) -> pending transaction count on chain
    """

    def __init__(self, session_factory: sessionmaker, chain_pending_nonce: Callable[[str], int]):
        self.session_factory = session_factory
        self.chain_pending_nonce = chain_pending_nonce
        self._lock = threading.Lock()
        self.logger = logger.bind(service="nonce_manager")

    def allocate(self, address: str) -> int:
        """
        Hand out the next nonce for `address`.

        Never returns a value below the chain's pending count, so nonces
        consumed outside this service are skipped.

        Raises:
            RuntimeError: when the compare-and-swap keeps losing
        """
        with self._lock:
            for _ in range(MAX_CAS_ATTEMPTS):
                chain_next = self.chain_pending_nonce(address)
                stored = self._read(address)

                if stored is None:
                    if self._insert(address, chain_next + 1):
                        self.logger.info("nonce_allocated", address=address, nonce=chain_next, source="chain")
                        return chain_next
                    continue

                nonce = max(stored, chain_next)
                if self._swap(address, stored, nonce + 1):
                    self.logger.info("nonce_allocated", address=address, nonce=nonce)
                    return nonce

            raise RuntimeError(f"Could not allocate nonce for {address} after {MAX_CAS_ATTEMPTS} attempts")

    def resync(self, address: str) -> int:
        """
        Reset the stored sequence to the chain's pending count.

        Called after a nonce conflict or when an allocated nonce is abandoned
        (cancelled or failed before broadcast) so the hole is reused. Nonces
        still held by pending or submitted records may not have reached the
        node yet, so the sequence never drops to or below the highest of them.
        """
        with self._lock:
            chain_next = self.chain_pending_nonce(address)
            session = self.session_factory()
            try:
                held = session.query(func.max(SubmissionRecord.nonce)).filter(
                    SubmissionRecord.signer == address,
                    SubmissionRecord.nonce.isnot(None),
                    SubmissionRecord.status.in_([s.value for s in ACTIVE_STATUSES])
                ).scalar()
                next_nonce = chain_next if held is None else max(chain_next, held + 1)

                row = session.get(SignerNonce, address)
                if row is None:
                    session.add(SignerNonce(address=address, next_nonce=next_nonce))
                else:
                    row.next_nonce = next_nonce
                    row.updated_at = utcnow()
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        self.logger.info("nonce_resynced", address=address, next_nonce=next_nonce, chain_next=chain_next, highest_held=held)
        return next_nonce

    def peek(self, address: str) -> int:
        """Next nonce that allocate() would consider, without reserving it."""
        stored = self._read(address)
        chain_next = self.chain_pending_nonce(address)
        return chain_next if stored is None else max(stored, chain_next)

    def _read(self, address: str):
        session = self.session_factory()
        try:
            row = session.get(SignerNonce, address)
            return None if row is None else row.next_nonce
        finally:
            session.close()

    def _insert(self, address: str, next_nonce: int) -> bool:
        session = self.session_factory()
        try:
            session.add(SignerNonce(address=address, next_nonce=next_nonce))
            session.commit()
            return True
        except IntegrityError:
            # Another worker process created the row first
            session.rollback()
            return False
        finally:
            session.close()

    def _swap(self, address: str, expected: int, new: int) -> bool:
        session = self.session_factory()
        try:
            result = session.execute(
                update(SignerNonce)
                .where(SignerNonce.address == address, SignerNonce.next_nonce == expected)
                .values(next_nonce=new, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
