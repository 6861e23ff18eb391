"""
Health and Status API Router
Liveness, chain connectivity and manual reconciliation trigger
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
import structlog

from tradechain.runtime import Runtime, get_runtime
from tradechain.services.errors import CoordinatorError

logger = structlog.get_logger()

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(request: Request):
    """
    Health Check Endpoint
    Liveness only: no upstream is contacted
    """
    runtime = getattr(request.app.state, "runtime", None)
    scheduler = getattr(request.app.state, "scheduler", None)

    health_status = {
        "status": "healthy",
        "environment": runtime.settings.environment if runtime else None,
        "services": {
            "api": "running",
            "runtime": "ready" if runtime else "not_initialized",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped"
        }
    }

    return JSONResponse(content=health_status, status_code=200)


@router.get("/api/v1/status")
def chain_status(runtime: Runtime = Depends(get_runtime)):
    """
    Chain connectivity and submission backlog

    Reports connected=false (HTTP 200) when the RPC node cannot be reached,
    so monitors can tell a degraded chain from a dead API.
    """
    counts = runtime.store.count_by_status()
    try:
        network = runtime.chain.network_info()
    except CoordinatorError as e:
        logger.warning("chain_status_unavailable", error_kind=e.kind, error=e.message)
        return {
            "connected": False,
            "error": e.to_dict(),
            "submissions": counts
        }

    return {
        "connected": True,
        "network": network,
        "submissions": counts
    }


@router.post("/api/v1/admin/reconciliation/trigger")
def trigger_reconciliation(runtime: Runtime = Depends(get_runtime)):
    """
    Run one reconciliation sweep now instead of waiting for the scheduler.

    A crashed sweep answers 500 with the error body; its ReconciliationReport
    row is left with status "failed".
    """
    try:
        result = runtime.reconciliation.run_reconciliation()
    except Exception as e:
        logger.error("manual_reconciliation_failed", error=str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"status": "failed", "error": {"kind": "internal_error", "message": str(e)}}
        )

    return {"status": "completed", "result": result}
