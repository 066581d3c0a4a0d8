"""Pydantic schemas for API request/response validation."""

from recovery.schemas.dunning import (
    DunningNotificationResponse,
    FailedPaymentDetail,
    PendingCancellationResponse,
)
from recovery.schemas.error import ErrorResponse
from recovery.schemas.failed_payment import (
    FailedPaymentList,
    FailedPaymentResponse,
    ManualRetryResponse,
    RetryAttemptResponse,
)
from recovery.schemas.failure_event import FailureEvent

__all__ = [
    "DunningNotificationResponse",
    "ErrorResponse",
    "FailedPaymentDetail",
    "FailedPaymentList",
    "FailedPaymentResponse",
    "FailureEvent",
    "ManualRetryResponse",
    "PendingCancellationResponse",
    "RetryAttemptResponse",
]
