"""
Idempotency Tokens
Caller-supplied or content-derived tokens used to deduplicate write requests
"""

from typing import Optional
import hashlib
import json

MAX_TOKEN_LENGTH = 255


def generate_idempotency_key(operation: str, aggregate_id: str, payload: dict) -> str:
    """
    Generate consistent idempotency key for an operation.

    Format: {operation_type}:{aggregate_id}:{content_hash[:16]}

    Args:
        operation: Type of operation (e.g., 'store_document')
        aggregate_id: Slot of the logical key being written
        payload: Operation payload to hash

    Returns:
        Idempotency key string
    """
    # Create consistent JSON representation for hashing
    payload_json = json.dumps(payload, sort_keys=True, default=str)
    content_hash = hashlib.sha256(payload_json.encode()).hexdigest()

    key = f"{operation}:{aggregate_id}:{content_hash[:16]}"
    return key


def resolve_token(
    body_token: Optional[str],
    header_token: Optional[str],
    operation: str,
    slot: str,
    payload: dict,
) -> str:
    """
    Pick the idempotency token for a request.

    Body field wins over the Idempotency-Key header. Without either, the
    token is derived from the payload so byte-identical retries deduplicate.
    """
    token = (body_token or header_token or "").strip()
    if token:
        return token[:MAX_TOKEN_LENGTH]
    return generate_idempotency_key(operation, slot, payload)
