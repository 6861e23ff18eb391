"""
IPFS API Router
File and JSON uploads, retrieval and pin management through the pinning service
"""

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import Response
import structlog

from tradechain.models.api_schemas import JsonUploadBody, PinBody
from tradechain.runtime import Runtime, get_runtime
from tradechain.services.errors import InvalidPayload
from tradechain.services.validation import validate_cid

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ipfs", tags=["ipfs"])


@router.post("/upload")
def upload_file(file: UploadFile = File(...), runtime: Runtime = Depends(get_runtime)):
    """
    Upload a file and pin it

    Returns:
        dict with cid, gateway url, filename and size
    """
    max_bytes = runtime.settings.max_upload_size_mb * 1024 * 1024
    content = file.file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise InvalidPayload(f"File exceeds {runtime.settings.max_upload_size_mb}MB limit")

    filename = file.filename or "upload"
    cid = runtime.pinning.pin_file(content, filename)

    logger.info("file_uploaded", cid=cid, filename=filename, size=len(content))

    return {
        "cid": cid,
        "url": runtime.pinning.gateway_url(cid),
        "filename": filename,
        "size": len(content)
    }


@router.post("/upload-json")
def upload_json(body: JsonUploadBody, runtime: Runtime = Depends(get_runtime)):
    """Pin a JSON document."""
    name = body.name or "data.json"
    cid = runtime.pinning.pin_json(body.data, name)
    return {
        "cid": cid,
        "url": runtime.pinning.gateway_url(cid),
        "filename": name
    }


@router.post("/pin")
def pin(body: PinBody, runtime: Runtime = Depends(get_runtime)):
    runtime.pinning.pin(body.ipfs_hash)
    return {"ipfs_hash": body.ipfs_hash, "message": "Pinned successfully"}


@router.post("/unpin")
def unpin(body: PinBody, runtime: Runtime = Depends(get_runtime)):
    runtime.pinning.unpin(body.ipfs_hash)
    return {"ipfs_hash": body.ipfs_hash, "message": "Unpinned successfully"}


@router.get("/{cid}/url")
def get_gateway_url(cid: str, runtime: Runtime = Depends(get_runtime)):
    return {"cid": cid, "url": runtime.pinning.gateway_url(cid)}


@router.get("/{cid}")
def get_content(cid: str, runtime: Runtime = Depends(get_runtime)):
    """Fetch raw content through the gateway."""
    validate_cid(cid)
    content = runtime.pinning.fetch(cid)
    return Response(content=content, media_type="application/octet-stream")
