"""FastAPI application entry point."""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from recovery.api.v1 import failed_payments, health, jobs
from recovery.api.webhooks import stripe as stripe_webhooks
from recovery.config import settings
from recovery.exceptions import NotRetryable, RecordNotFound, StoreUnavailable
from recovery.middleware.logging import LoggingMiddleware, setup_logging
from recovery.middleware.metrics import MetricsMiddleware
from recovery.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse

setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    logger.info("application_starting", env=settings.app_env)
    yield
    logger.info("application_shutting_down")


app = FastAPI(
    title="Payment Recovery Engine",
    description="Retries, dunning and cancellation for failed membership payments",
    version="0.1.0",
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

# Mount Prometheus metrics endpoint
app.mount("/metrics", make_asgi_app())


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")


def _error(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    code: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        details=[ErrorDetail(code=code, message=message)],
        remediation=REMEDIATION_HINTS.get(code),
        request_id=_request_id(request),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


@app.exception_handler(RecordNotFound)
async def not_found_handler(request: Request, exc: RecordNotFound) -> JSONResponse:
    return _error(request, status.HTTP_404_NOT_FOUND, "NotFound", str(exc), ErrorCode.PAYMENT_NOT_FOUND)


@app.exception_handler(NotRetryable)
async def not_retryable_handler(request: Request, exc: NotRetryable) -> JSONResponse:
    logger.info("manual_retry_rejected", path=request.url.path, reason=str(exc))
    return _error(request, status.HTTP_409_CONFLICT, "Conflict", str(exc), ErrorCode.PAYMENT_NOT_RETRYABLE)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field-level validation errors."""
    details = [
        ErrorDetail(
            code=ErrorCode.VALIDATION_ERROR,
            message=error["msg"],
            field=".".join(str(loc) for loc in error["loc"]),
        )
        for error in exc.errors()
    ]
    logger.warning("validation_error", path=request.url.path, error_count=len(details))

    body = ErrorResponse(
        error="ValidationError",
        message="Request validation failed",
        details=details,
        request_id=_request_id(request),
    )
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump(mode="json"))


@app.exception_handler(StoreUnavailable)
@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle database errors.

    Returns 503 Service Unavailable; the scheduled caller retries on its next tick.
    """
    logger.error(
        "database_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )
    # Don't expose internal database details in production
    message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)
    return _error(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DatabaseError",
        message,
        ErrorCode.DATABASE_ERROR,
        headers={"Retry-After": "30"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return 500 for anything unexpected; the stack trace only goes to the log."""
    logger.exception("unhandled_exception", path=request.url.path, exception_type=type(exc).__name__, exc_info=exc)
    message = str(exc) if settings.debug else "Internal server error"
    return _error(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "InternalServerError", message, ErrorCode.INTERNAL_ERROR)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "Payment Recovery Engine",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
        "timestamp": datetime.utcnow().isoformat(),
    }


app.include_router(health.router)
app.include_router(failed_payments.router, prefix="/api/v1")
app.include_router(jobs.router, prefix="/api/v1")
app.include_router(stripe_webhooks.router)
