"""
Database Models
"""

from tradechain.models.submission_record import SubmissionRecord
from tradechain.models.cached_record import CachedRecord
from tradechain.models.signer_nonce import SignerNonce
from tradechain.models.reconciliation_report import ReconciliationReport
from tradechain.models.write_request import (
    DocumentType,
    LogicalKey,
    RecordType,
    SubmissionStatus,
    WriteRequest,
)

__all__ = [
    "SubmissionRecord",
    "CachedRecord",
    "SignerNonce",
    "ReconciliationReport",
    "DocumentType",
    "LogicalKey",
    "RecordType",
    "SubmissionStatus",
    "WriteRequest",
]
