"""
Read-Repair Cache
Serves contract reads that reflect confirmed writes only, repairing stale entries from the chain
"""

from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from tradechain.database import utcnow
from tradechain.models.cached_record import CachedRecord
from tradechain.models.write_request import LogicalKey
from tradechain.services.chain_client import ChainClient
from tradechain.services.fingerprint_store import FingerprintStore
from tradechain.services.validation import validate_key

logger = structlog.get_logger(__name__)


class ReadRepairCache:
    """
    Cache of confirmed contract values per logical key.

    A miss, a stale entry, an expired entry or an entry older than the
    latest confirmed write for the key triggers a read from the contract at
    the confirmed head (head - confirmation_depth + 1). Values from writes
    that have not reached the confirmation depth are never observed.

    confirmed_at_block is monotonic per key: a repair never lowers it.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        chain: ChainClient,
        store: FingerprintStore,
        confirmation_depth: int = 1,
        ttl_seconds: int = 300,
    ):
        self.session_factory = session_factory
        self.chain = chain
        self.store = store
        self.confirmation_depth = max(1, confirmation_depth)
        self.ttl = timedelta(seconds=ttl_seconds)
        self.logger = logger.bind(service="read_cache")

    def get(self, key: LogicalKey) -> Dict[str, Any]:
        """
        Return the confirmed value for a key.

        Raises:
            InvalidPayload: malformed key
            RecordNotFound: nothing stored on chain for the key
            TransientChainError / UpstreamUnavailable: chain read failed
        """
        validate_key(key)

        latest = self.store.latest_confirmed(key)
        watermark = latest.confirmed_block if latest is not None and latest.confirmed_block else 0

        entry = self._load(key.slot)
        if entry is not None and self._is_fresh(entry, watermark):
            self.logger.debug("cache_hit", slot=key.slot, block=entry.confirmed_at_block)
            return entry.value

        return self._repair(key, entry, watermark)

    def invalidate(self, key: LogicalKey, confirmed_block: Optional[int] = None) -> None:
        """Mark the entry for a key stale. The block watermark is kept."""
        session = self.session_factory()
        try:
            entry = session.get(CachedRecord, key.slot)
            if entry is not None:
                entry.stale = True
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        self.logger.info("cache_invalidated", slot=key.slot, confirmed_block=confirmed_block)

    def is_product_complete(self, product_id: int) -> bool:
        """Pass-through read; not cached."""
        validate_key(LogicalKey.carbon_emission(product_id))
        return self.chain.is_product_complete(product_id)

    def peek(self, key: LogicalKey) -> Optional[CachedRecord]:
        return self._load(key.slot)

    def list_stale(self, limit: int = 100):
        session = self.session_factory()
        try:
            return session.query(CachedRecord).filter(
                CachedRecord.stale.is_(True)
            ).order_by(CachedRecord.fetched_at).limit(limit).all()
        finally:
            session.close()

    def _is_fresh(self, entry: CachedRecord, watermark: int) -> bool:
        if entry.stale:
            return False
        if entry.confirmed_at_block < watermark:
            return False
        return utcnow() - entry.fetched_at <= self.ttl

    def _repair(self, key: LogicalKey, entry: Optional[CachedRecord], watermark: int) -> Dict[str, Any]:
        head = self.chain.block_number()
        previous = entry.confirmed_at_block if entry is not None else 0
        # Never read below a block already known to hold a confirmed write
        read_block = max(0, head - self.confirmation_depth + 1, watermark, previous)

        # RecordNotFound propagates; misses are not cached
        value = self.chain.read_value(key, block=read_block)

        confirmed_at_block = read_block
        self._store(key, value, confirmed_at_block)

        self.logger.info(
            "cache_repaired",
            slot=key.slot,
            read_block=read_block,
            confirmed_at_block=confirmed_at_block
        )
        return value

    def _load(self, slot: str) -> Optional[CachedRecord]:
        session = self.session_factory()
        try:
            return session.get(CachedRecord, slot)
        finally:
            session.close()

    def _store(self, key: LogicalKey, value: Dict[str, Any], confirmed_at_block: int, retry: bool = True) -> None:
        session = self.session_factory()
        try:
            entry = session.get(CachedRecord, key.slot)
            if entry is None:
                session.add(CachedRecord(
                    slot=key.slot,
                    entity_id=key.entity_id,
                    record_type=key.record_type.value,
                    doc_type=key.doc_type,
                    value=value,
                    confirmed_at_block=confirmed_at_block,
                    fetched_at=utcnow(),
                    stale=False,
                ))
            elif (entry.confirmed_at_block or 0) > confirmed_at_block and not entry.stale:
                # A concurrent repair already stored a newer read
                return
            else:
                entry.confirmed_at_block = max(entry.confirmed_at_block or 0, confirmed_at_block)
                entry.value = value
                entry.fetched_at = utcnow()
                entry.stale = False
            session.commit()
        except IntegrityError:
            # Concurrent first insert for the slot; retry as an update
            session.rollback()
            if not retry:
                raise
            session.close()
            self._store(key, value, confirmed_at_block, retry=False)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
