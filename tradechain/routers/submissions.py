"""
Write Submission API Router
Accepts document and carbon emission writes and exposes their SubmissionRecord status
"""

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse
from typing import Optional
import structlog

from tradechain.models.api_schemas import CarbonEmissionWriteBody, DocumentWriteBody, WriteAccepted
from tradechain.models.write_request import LogicalKey, SubmissionStatus, WriteRequest
from tradechain.runtime import Runtime, get_runtime
from tradechain.services.errors import InvalidPayload, RecordNotFound
from tradechain.services.idempotency import resolve_token
from tradechain.services.validation import validate_payload

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["submissions"])


def _accept(
    runtime: Runtime,
    operation: str,
    key: LogicalKey,
    raw_payload: dict,
    body_token: Optional[str],
    header_token: Optional[str],
) -> JSONResponse:
    payload = validate_payload(key, raw_payload)
    token = resolve_token(body_token, header_token, operation, key.slot, payload)

    record, replayed = runtime.queue.submit(WriteRequest(key=key, payload=payload, idempotency_token=token))

    body = WriteAccepted(
        request_id=record.id,
        status=record.status,
        idempotency_token=record.idempotency_token,
        replayed=replayed
    )
    return JSONResponse(status_code=200 if replayed else 202, content=body.model_dump())


@router.post("/documents", status_code=202, response_model=WriteAccepted)
def submit_document(
    body: DocumentWriteBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    runtime: Runtime = Depends(get_runtime)
):
    """
    Store a document CID for a product (storeDocument).

    Returns 202 with the new request id, or 200 with the original request
    when the idempotency token was seen before.
    """
    return _accept(
        runtime,
        "store_document",
        LogicalKey.document(body.product_id, body.doc_type),
        {"cid": body.cid},
        body.idempotency_token,
        idempotency_key
    )


@router.post("/carbon-emissions", status_code=202, response_model=WriteAccepted)
def submit_carbon_emission(
    body: CarbonEmissionWriteBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    runtime: Runtime = Depends(get_runtime)
):
    """Set the carbon emission of a product (setCarbonEmission)."""
    return _accept(
        runtime,
        "set_carbon_emission",
        LogicalKey.carbon_emission(body.product_id),
        {"total_emissions": body.total_emissions, "unit": body.unit},
        body.idempotency_token,
        idempotency_key
    )


@router.get("/submissions")
def list_submissions(
    status: Optional[str] = Query(None, description="Filter by status (pending, submitted, confirmed, failed)"),
    limit: int = Query(50, ge=1, le=200, description="Maximum number of records to return"),
    runtime: Runtime = Depends(get_runtime)
):
    """
    List recent submissions with optional status filter

    Returns:
        dict with status breakdown and record list (newest first)
    """
    status_filter = None
    if status:
        try:
            status_filter = SubmissionStatus(status)
        except ValueError:
            raise InvalidPayload(f"Unknown status: {status}")

    records = runtime.store.list_recent(status=status_filter, limit=limit)
    counts = runtime.store.count_by_status()

    logger.info("submissions_listed", returned=len(records), filter=status)

    return {
        "total": sum(counts.values()) if status_filter is None else counts[status_filter.value],
        "by_status": counts,
        "submissions": [record.to_dict() for record in records]
    }


@router.get("/submissions/{request_id}")
def get_submission(request_id: str, runtime: Runtime = Depends(get_runtime)):
    """
    Get the status of one submission

    A failed record with error kind confirmation_timeout reports
    outcome 'unknown': the transaction may still land.
    """
    record = runtime.store.get(request_id)
    if record is None:
        raise RecordNotFound(f"Submission {request_id} not found")
    return record.to_dict()


@router.post("/submissions/{request_id}/cancel")
def cancel_submission(request_id: str, runtime: Runtime = Depends(get_runtime)):
    """Cancel a submission that has not been broadcast yet (409 otherwise)."""
    record = runtime.queue.cancel(request_id)
    return record.to_dict()
