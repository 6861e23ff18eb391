"""
Tradechain Write Coordinator - Main Application
FastAPI Entry Point with APScheduler for Reconciliation
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from tradechain import __version__
from tradechain.actors import clear_runtime, configure_runtime, start_inline_worker
from tradechain.config import settings, validate_production_settings
from tradechain.middleware import CorrelationIdMiddleware
from tradechain.routers import health_router, ipfs_router, records_router, submissions_router
from tradechain.runtime import build_runtime
from tradechain.scheduler import start_scheduler, stop_scheduler
from tradechain.services.errors import CoordinatorError, InvalidPayload
from tradechain.services.monitoring import init_sentry, setup_logging

# Structured Logging Setup
setup_logging(settings.log_level)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown"""
    logger.info("startup", environment=settings.environment)

    validate_production_settings(settings)
    init_sentry()

    runtime = getattr(app.state, "runtime", None)
    owned = runtime is None
    if owned:
        runtime = build_runtime(settings)
        app.state.runtime = runtime
    configure_runtime(runtime)

    app.state.scheduler = start_scheduler(
        runtime,
        environment=settings.environment,
        interval_seconds=settings.reconciliation_interval_seconds
    )

    worker = None
    if settings.inline_worker:
        worker = start_inline_worker(settings.worker_threads)

    try:
        yield
    finally:
        logger.info("shutdown")
        if worker is not None:
            worker.stop()
        stop_scheduler(app.state.scheduler)
        clear_runtime(runtime)
        if owned:
            runtime.close()
            app.state.runtime = None


async def coordinator_error_handler(request: Request, exc: CoordinatorError) -> JSONResponse:
    """Render every CoordinatorError as {"error": {"kind", "message"}}."""
    if exc.http_status >= 500:
        logger.warning("request_failed", path=request.url.path, kind=exc.kind, error=exc.message)
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/path validation failures are reported as invalid_payload."""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    error = InvalidPayload(problems or "Invalid request")
    return JSONResponse(status_code=error.http_status, content={"error": error.to_dict()})


def create_app(runtime=None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        runtime: Pre-built Runtime (tests); when None the lifespan builds one
            from settings and closes it on shutdown
    """
    app = FastAPI(
        title="Tradechain Write Coordinator",
        description="Transactional write coordination for the TradeDocuments contract",
        version=__version__,
        docs_url="/docs" if settings.environment == "development" else None,
        redoc_url="/redoc" if settings.environment == "development" else None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.scheduler = None

    app.add_middleware(CorrelationIdMiddleware)
    app.add_exception_handler(CoordinatorError, coordinator_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Register routers
    app.include_router(health_router)
    app.include_router(submissions_router)
    app.include_router(records_router)
    app.include_router(ipfs_router)

    @app.get("/")
    def root():
        """Root Endpoint"""
        return {
            "message": "Tradechain Write Coordinator API",
            "version": __version__,
            "status": "running"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tradechain.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
