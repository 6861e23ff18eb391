"""
Record Read API Router
Confirmed contract values served through the Read-Repair Cache
"""

from fastapi import APIRouter, Depends
import structlog

from tradechain.models.write_request import DocumentType, LogicalKey
from tradechain.runtime import Runtime, get_runtime
from tradechain.services.errors import RecordNotFound

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["records"])


@router.get("/documents/{product_id}/{doc_type}")
def get_document(product_id: int, doc_type: int, runtime: Runtime = Depends(get_runtime)):
    """
    Get the confirmed document for a product and document type

    Returns:
        dict with product_id, doc_type, cid, uploaded_by, timestamp
    """
    value = runtime.cache.get(LogicalKey.document(product_id, doc_type))
    return {"product_id": product_id, "doc_type": doc_type, **value}


@router.get("/carbon-emissions/{product_id}")
def get_carbon_emission(product_id: int, runtime: Runtime = Depends(get_runtime)):
    """Get the confirmed carbon emission record for a product."""
    value = runtime.cache.get(LogicalKey.carbon_emission(product_id))
    return {"product_id": product_id, **value}


@router.get("/products/{product_id}/status")
def get_product_status(product_id: int, runtime: Runtime = Depends(get_runtime)):
    """Whether every document type is stored for the product (isProductComplete)."""
    return {
        "product_id": product_id,
        "is_complete": runtime.cache.is_product_complete(product_id)
    }


@router.get("/products/{product_id}/summary")
def get_product_summary(product_id: int, runtime: Runtime = Depends(get_runtime)):
    """
    Product overview: carbon emission, completeness and each document slot

    Slots with nothing stored on chain are reported as null.
    """
    try:
        carbon = runtime.cache.get(LogicalKey.carbon_emission(product_id))
    except RecordNotFound:
        carbon = None

    documents = {}
    for doc_type in DocumentType:
        try:
            documents[doc_type.name.lower()] = runtime.cache.get(LogicalKey.document(product_id, doc_type.value))
        except RecordNotFound:
            documents[doc_type.name.lower()] = None

    is_complete = runtime.cache.is_product_complete(product_id)

    logger.info("product_summary", product_id=product_id, is_complete=is_complete)

    return {
        "product_id": product_id,
        "carbon_emission": carbon,
        "is_complete": is_complete,
        "documents": documents
    }
