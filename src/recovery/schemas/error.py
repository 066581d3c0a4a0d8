"""Structured error response schemas."""
from datetime import datetime
from typing import Any
from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure returned by every error handler."""

    error: str = Field(..., description="Error type (e.g., 'NotFound', 'Conflict')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(default=None)
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")


class ErrorCode:
    """Standard error codes used across the API."""

    VALIDATION_ERROR = "validation_error"
    PAYMENT_NOT_FOUND = "payment_not_found"
    PAYMENT_NOT_RETRYABLE = "payment_not_retryable"
    DATABASE_ERROR = "database_error"
    INTERNAL_ERROR = "internal_error"


REMEDIATION_HINTS = {
    ErrorCode.PAYMENT_NOT_FOUND: "Verify the failed payment ID is correct",
    ErrorCode.PAYMENT_NOT_RETRYABLE: "Only failed payments with no retry in progress can be retried",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}
