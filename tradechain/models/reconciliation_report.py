"""
ReconciliationReport Model
Tracks reconciliation sweeps over submission records and the read cache
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from tradechain.database import Base, utcnow


class ReconciliationReport(Base):
    """
    Audit trail for reconciliation runs.

    Records how many lost dispatches were re-sent, how many submitted records
    were re-polled, how many cache entries were repaired and how many archived
    records were purged.
    """
    __tablename__ = "reconciliation_reports"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Run Timestamps
    run_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    # Reconciliation Metrics
    redispatched = Column(Integer, default=0, nullable=False)
    repolled = Column(Integer, default=0, nullable=False)
    archived = Column(Integer, default=0, nullable=False)
    cache_repaired = Column(Integer, default=0, nullable=False)
    purged = Column(Integer, default=0, nullable=False)

    # Per-record details: [{type, request_id, slot, ...}]
    details = Column(JSON, nullable=True)

    # Status
    status = Column(String(50), default='running', nullable=False)
    # Statuses: running, completed, failed

    error_message = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ReconciliationReport(id={self.id}, run_at={self.run_at}, status='{self.status}')>"
