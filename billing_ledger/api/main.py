"""
Main FastAPI application.

Billing ledger API with:
- Stripe webhook ingestion
- Account, affiliate and billing routes
- Operator routes (sweep, requeue, replay)
- Request ID tracking and structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_ledger import __version__
from billing_ledger.config import get_settings
from billing_ledger.core.exceptions import (
    AccountConflict,
    AccountNotFound,
    AffiliateError,
    BillingError,
    EventNotFound,
    LedgerError,
    TransferNotFound,
)
from billing_ledger.database.connection import close_db, init_db
from billing_ledger.integrations.stripe_client import ExternalServiceError
from billing_ledger.monitoring.logging import setup_logging

from .routes import (
    account_router,
    admin_router,
    affiliate_router,
    billing_router,
    monitoring_router,
    webhook_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()

ERROR_STATUS = (
    ((AccountNotFound, EventNotFound, TransferNotFound), status.HTTP_404_NOT_FOUND),
    ((AffiliateError, AccountConflict), status.HTTP_409_CONFLICT),
    ((BillingError,), status.HTTP_400_BAD_REQUEST),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup, dispose of the engine on shutdown."""
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    await close_db()
    logger.info("database_connections_closed")


app = FastAPI(
    title="Billing Ledger",
    description=(
        "Stripe webhook reconciliation and affiliate commission ledger. "
        "Features: event deduplication, subscription projection, commission "
        "accounting, idempotent payouts and refund reversals."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Map domain errors to client errors; anything unmapped is a 500."""
    for error_types, status_code in ERROR_STATUS:
        if isinstance(exc, error_types):
            logger.info(
                "request_rejected",
                error=str(exc),
                error_type=type(exc).__name__,
                status_code=status_code,
            )
            return JSONResponse(status_code=status_code, content={"error": str(exc)})

    logger.error("ledger_error", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


@app.exception_handler(ExternalServiceError)
async def processor_exception_handler(
    request: Request, exc: ExternalServiceError
) -> JSONResponse:
    """Stripe failures on application routes surface as a bad gateway."""
    logger.error(
        "processor_error",
        error=str(exc),
        error_type=exc.error_type.value,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "Payment processor request failed"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


app.include_router(webhook_router)
app.include_router(account_router)
app.include_router(affiliate_router)
app.include_router(billing_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "billing_ledger.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
