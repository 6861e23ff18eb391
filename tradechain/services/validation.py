"""
Payload Validation
CID, emission and logical key checks applied before a WriteRequest is accepted
"""

import re
from typing import Any, Dict

from tradechain.models.write_request import DocumentType, LogicalKey, RecordType
from tradechain.services.errors import InvalidPayload

# CIDv0: "Qm" + 44 base58 characters (46 total)
CID_V0_PATTERN = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
# CIDv1: "bafy" + variable-length suffix
CID_V1_PATTERN = re.compile(r"^bafy[a-zA-Z0-9]+$")

UINT256_MAX = 2 ** 256 - 1
MAX_UNIT_LENGTH = 32
DEFAULT_UNIT = "kgCO2e"


def is_valid_cid(cid: Any) -> bool:
    """Check CIDv0 (Qm...) or CIDv1 (bafy...) form."""
    if not isinstance(cid, str):
        return False
    return bool(CID_V0_PATTERN.match(cid) or CID_V1_PATTERN.match(cid))


def validate_cid(cid: Any) -> str:
    if not is_valid_cid(cid):
        raise InvalidPayload(f"Invalid IPFS CID: {cid!r}")
    return cid


def validate_key(key: LogicalKey) -> LogicalKey:
    """
    Validate a logical key.

    Raises:
        InvalidPayload: entity id below 1, unknown doc type, or doc type on a
            carbon emission key
    """
    if isinstance(key.entity_id, bool) or not isinstance(key.entity_id, int) or key.entity_id < 1:
        raise InvalidPayload("Product ID must be a positive integer")
    if key.entity_id > UINT256_MAX:
        raise InvalidPayload("Product ID exceeds uint256 range")

    if key.record_type == RecordType.DOCUMENT:
        if key.doc_type not in {d.value for d in DocumentType}:
            raise InvalidPayload("Document type must be 0-3")
    elif key.doc_type is not None:
        raise InvalidPayload("Carbon emission records do not take a document type")

    return key


def validate_payload(key: LogicalKey, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and normalize a write payload for its key.

    Returns:
        Normalized payload ({"cid"} or {"total_emissions", "unit"})

    Raises:
        InvalidPayload: on any malformed field
    """
    validate_key(key)

    if not isinstance(payload, dict):
        raise InvalidPayload("Payload must be an object")

    if key.record_type == RecordType.DOCUMENT:
        return {"cid": validate_cid(payload.get("cid"))}

    total = payload.get("total_emissions")
    if isinstance(total, bool) or not isinstance(total, int):
        raise InvalidPayload("Total emissions must be a positive integer")
    if total < 1 or total > UINT256_MAX:
        raise InvalidPayload("Total emissions must be between 1 and 2**256 - 1")

    unit = payload.get("unit") or DEFAULT_UNIT
    if not isinstance(unit, str) or not unit.strip():
        raise InvalidPayload("Unit must be a non-empty string")
    unit = unit.strip()
    if len(unit) > MAX_UNIT_LENGTH:
        raise InvalidPayload(f"Unit must be at most {MAX_UNIT_LENGTH} characters")

    return {"total_emissions": total, "unit": unit}
