"""
CachedRecord Model
Latest confirmed on-chain value for a logical key, owned by the Read-Repair Cache
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON

from tradechain.database import Base, utcnow


class CachedRecord(Base):
    """
    Cached contract read for one slot.

    confirmed_at_block never decreases for a slot; invalidation flips `stale`
    and keeps the block watermark.
    """
    __tablename__ = "cached_records"

    slot = Column(String(100), primary_key=True)
    entity_id = Column(Integer, nullable=False)
    record_type = Column(String(32), nullable=False)
    doc_type = Column(Integer, nullable=True)

    value = Column(JSON, nullable=True)
    confirmed_at_block = Column(Integer, nullable=False, default=0)
    fetched_at = Column(DateTime, nullable=False, default=utcnow)
    stale = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<CachedRecord(slot='{self.slot}', block={self.confirmed_at_block}, stale={self.stale})>"
