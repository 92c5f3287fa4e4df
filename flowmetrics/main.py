"""
Deal Flow Metrics API.

Mounts the dashboard read path, the admin configuration routes, ingestion
triggers and system diagnostics under /api/v1. Every response outside
/health uses the {"success": ..., "data" | "error": ...} envelope; errors
raised anywhere below are rendered into it here.
"""

import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from flowmetrics import __version__
from flowmetrics.config import Settings, get_settings
from flowmetrics.routers import admin, flow_metrics, ingestion, system
from flowmetrics.storage import StorageError, get_storage
from flowmetrics.utils.logging import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)

API_PREFIX = "/api/v1"

ROUTERS = [
    (flow_metrics.router, "/flow", "Flow Metrics"),
    (admin.router, "/admin", "Admin"),
    (ingestion.router, "/ingestion", "Ingestion"),
    (system.router, "/system", "System"),
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Ensure the database directory exists and open storage before serving."""
    settings = get_settings()
    Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        stats = get_storage().interval_stats()
    except StorageError as e:
        logger.error("storage_unavailable_at_startup", db_path=settings.db_path, error=str(e))
        stats = None

    logger.info(
        "application_startup",
        version=__version__,
        dev_mode=settings.dev_mode,
        db_path=settings.db_path,
        stored_intervals=stats["total_records"] if stats else None,
    )
    yield
    logger.info("application_shutdown")


async def trace_requests(request: Request, call_next):
    """Bind a request ID for the request's log events and time it."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    started = time.monotonic()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.monotonic() - started) * 1000, 1),
    )
    return response


async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
    """Envelope for route errors and for routing 404/405, which Starlette raises itself."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render body/query validation problems in the same shape as mapping validation."""
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    logger.warning("request_validation_failed", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": {"message": "Validation failed", "errors": errors}},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Deal Flow Metrics API",
        description="Stage-to-stage flow metrics computed from CRM deal histories",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.middleware("http")(trace_requests)
    app.add_exception_handler(HTTPException, http_error)
    app.add_exception_handler(RequestValidationError, request_validation_error)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Liveness probe; see /api/v1/system/health for the database check."""
        return {
            "status": "healthy",
            "version": __version__,
            "environment": "development" if settings.dev_mode else "production",
        }

    for router, prefix, tag in ROUTERS:
        app.include_router(router, prefix=API_PREFIX + prefix, tags=[tag])

    logger.info("application_configured", routers=[API_PREFIX + p for _, p, _ in ROUTERS])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "flowmetrics.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
