"""
Write Coordination Domain Types
LogicalKey, WriteRequest and the status/record-type enums shared by the store, queue and watcher
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

from tradechain.database import utcnow


class RecordType(str, Enum):
    """Kind of mutable on-chain slot."""
    DOCUMENT = "document"
    CARBON_EMISSION = "carbon_emission"


class DocumentType(IntEnum):
    """Document types as numbered by the TradeDocuments contract."""
    RETAIL_RECEIPT = 0
    PROCESSING_INVOICE = 1
    FARM_CERTIFICATE = 2
    BILL_OF_LADING = 3


class SubmissionStatus(str, Enum):
    """
    SubmissionRecord state machine:
    pending -> submitted -> confirmed | failed
    submitted -> pending (retryable broadcast failure)
    pending -> failed (cancelled, non-retryable build error)
    """
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


ACTIVE_STATUSES = frozenset({SubmissionStatus.PENDING, SubmissionStatus.SUBMITTED})


@dataclass(frozen=True)
class LogicalKey:
    """
    Identifies one mutable on-chain record slot.

    `doc_type` is required for documents and must be None for carbon emissions.
    """
    entity_id: int
    record_type: RecordType
    doc_type: Optional[int] = None

    @classmethod
    def document(cls, product_id: int, doc_type: int) -> "LogicalKey":
        return cls(entity_id=product_id, record_type=RecordType.DOCUMENT, doc_type=doc_type)

    @classmethod
    def carbon_emission(cls, product_id: int) -> "LogicalKey":
        return cls(entity_id=product_id, record_type=RecordType.CARBON_EMISSION)

    @property
    def slot(self) -> str:
        """Stable string form used as the database key, e.g. 'document:1:0'."""
        if self.record_type == RecordType.DOCUMENT:
            return f"{self.record_type.value}:{self.entity_id}:{self.doc_type}"
        return f"{self.record_type.value}:{self.entity_id}"

    @classmethod
    def from_slot(cls, slot: str) -> "LogicalKey":
        parts = slot.split(":")
        record_type = RecordType(parts[0])
        if record_type == RecordType.DOCUMENT:
            return cls.document(int(parts[1]), int(parts[2]))
        return cls.carbon_emission(int(parts[1]))

    def __str__(self) -> str:
        return self.slot


@dataclass(frozen=True)
class WriteRequest:
    """
    A logical write accepted from the API layer. Immutable once enqueued.

    payload is {"cid": str} for documents and
    {"total_emissions": int, "unit": str} for carbon emissions.
    """
    key: LogicalKey
    payload: Dict[str, Any]
    idempotency_token: str
    submitted_at: datetime = field(default_factory=utcnow)
