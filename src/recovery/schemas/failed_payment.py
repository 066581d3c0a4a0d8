"""Pydantic schemas for failed payment entities."""
from pydantic import BaseModel, Field, ConfigDict
from uuid import UUID
from datetime import datetime
from typing import Optional, List

from recovery.models.failed_payment import FailureKind, RetryStatus


class RetryAttemptResponse(BaseModel):
    """Schema for retry attempt response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    attempt_number: int
    scheduled_date: datetime
    status: RetryStatus
    is_manual: bool
    executed_date: Optional[datetime] = None
    result_message: Optional[str] = None
    transaction_ref: Optional[str] = Field(None, description="Stripe payment intent ID of the retry")


class FailedPaymentResponse(BaseModel):
    """Schema for failed payment response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payer_id: UUID
    source_ref: str
    amount: int = Field(..., description="Amount in minor units")
    currency: str
    failure_kind: FailureKind
    failure_message: Optional[str] = None
    status: RetryStatus
    failed_at: datetime
    subscription_ref: Optional[str] = None
    invoice_ref: Optional[str] = None
    max_retries: int
    next_retry_at: Optional[datetime] = None
    created_at: datetime


class FailedPaymentList(BaseModel):
    """Schema for paginated list of failed payments."""

    items: List[FailedPaymentResponse]
    page: int
    page_size: int


class ManualRetryResponse(BaseModel):
    """Schema for the result of an admin-triggered retry."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: UUID
    attempt_id: UUID
    attempt_number: int
    outcome: str
    attempt_status: RetryStatus
    message: Optional[str] = None
    transaction_ref: Optional[str] = None
