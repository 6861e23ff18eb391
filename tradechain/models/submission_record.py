"""
SubmissionRecord Model
Tracks one WriteRequest through the pending -> submitted -> confirmed | failed state machine
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index, text

from tradechain.database import Base, utcnow
from tradechain.models.write_request import LogicalKey, RecordType, SubmissionStatus


class SubmissionRecord(Base):
    """
    Submission state for a single logical write.

    Created by the Submission Queue with status 'pending'; mutated only by the
    Chain Watcher through compare-and-swap status transitions. At most one
    pending/submitted record may exist per slot (partial unique index).
    """
    __tablename__ = "submission_records"

    # Primary Key (request id handed back to API callers)
    id = Column(String(36), primary_key=True)

    # Logical Key
    slot = Column(String(100), nullable=False, index=True)
    entity_id = Column(Integer, nullable=False)
    record_type = Column(String(32), nullable=False)
    doc_type = Column(Integer, nullable=True)

    # Request
    payload = Column(JSON, nullable=False)
    idempotency_token = Column(String(255), nullable=False, unique=True)

    # State Machine
    status = Column(String(20), nullable=False, default=SubmissionStatus.PENDING.value)
    attempt = Column(Integer, nullable=False, default=0)
    error_kind = Column(String(50), nullable=True)
    last_error = Column(Text, nullable=True)

    # Transaction
    tx_hash = Column(String(66), nullable=True, index=True)
    signer = Column(String(42), nullable=True)
    nonce = Column(Integer, nullable=True)
    confirmed_block = Column(Integer, nullable=True)

    # Timestamps (naive UTC)
    created_at = Column(DateTime, nullable=False, default=utcnow)  # WriteRequest.submitted_at
    submitted_at = Column(DateTime, nullable=True)  # broadcast time
    confirmed_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    archived_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_submission_active_slot",
            "slot",
            unique=True,
            postgresql_where=text("status IN ('pending', 'submitted')"),
            sqlite_where=text("status IN ('pending', 'submitted')"),
        ),
        Index("ix_submission_status_updated", "status", "updated_at"),
        Index("ix_submission_signer_nonce", "signer", "nonce"),
    )

    @property
    def key(self) -> LogicalKey:
        return LogicalKey(
            entity_id=self.entity_id,
            record_type=RecordType(self.record_type),
            doc_type=self.doc_type,
        )

    @property
    def state(self) -> SubmissionStatus:
        return SubmissionStatus(self.status)

    def to_dict(self) -> dict:
        """Status payload returned by the polling API."""
        return {
            "request_id": self.id,
            "key": {
                "entity_id": self.entity_id,
                "record_type": self.record_type,
                "doc_type": self.doc_type,
            },
            "payload": self.payload,
            "idempotency_token": self.idempotency_token,
            "status": self.status,
            "outcome": _outcome(self),
            "attempt": self.attempt,
            "tx_hash": self.tx_hash,
            "nonce": self.nonce,
            "confirmed_block": self.confirmed_block,
            "error": (
                {"kind": self.error_kind, "message": self.last_error}
                if self.error_kind else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<SubmissionRecord(id='{self.id}', slot='{self.slot}', status='{self.status}', attempt={self.attempt})>"


def _outcome(record: "SubmissionRecord") -> str:
    # A confirmation timeout means the transaction may still land
    if record.status == SubmissionStatus.CONFIRMED.value:
        return "landed"
    if record.status == SubmissionStatus.FAILED.value:
        return "unknown" if record.error_kind == "confirmation_timeout" else "not_landed"
    return "in_flight"
