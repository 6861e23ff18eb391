"""
Pydantic schemas for the write, read and pinning endpoints
"""

from pydantic import BaseModel, Field
from typing import Any, Optional


class DocumentWriteBody(BaseModel):
    """
    Request body for POST /api/v1/documents
    Range checks (product id, doc type, CID format) happen in the Submission Queue
    """
    product_id: int = Field(..., description="Product ID (>= 1)")
    doc_type: int = Field(..., description="0 RetailReceipt, 1 ProcessingInvoice, 2 FarmCertificate, 3 BillOfLading")
    cid: str = Field(..., description="IPFS CID (v0 Qm... or v1 bafy...)")
    idempotency_token: Optional[str] = Field(None, description="Overrides the Idempotency-Key header")


class CarbonEmissionWriteBody(BaseModel):
    """
    Request body for POST /api/v1/carbon-emissions
    """
    product_id: int = Field(..., description="Product ID (>= 1)")
    total_emissions: int = Field(..., description="Total emissions (>= 1)")
    unit: Optional[str] = Field(None, description="Unit, defaults to kgCO2e")
    idempotency_token: Optional[str] = Field(None, description="Overrides the Idempotency-Key header")


class WriteAccepted(BaseModel):
    """
    Response for accepted (202) or replayed (200) writes
    """
    request_id: str
    status: str
    idempotency_token: str
    replayed: bool = False


class JsonUploadBody(BaseModel):
    """Request body for POST /api/v1/ipfs/upload-json"""
    data: Any = Field(..., description="JSON document to pin")
    name: Optional[str] = Field(None, description="Pin name, defaults to data.json")


class PinBody(BaseModel):
    """Request body for pin/unpin"""
    ipfs_hash: str = Field(..., description="CID to pin or unpin")
