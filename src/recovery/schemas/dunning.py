"""Pydantic schemas for the dunning timeline."""
from pydantic import BaseModel, ConfigDict
from uuid import UUID
from datetime import datetime
from typing import Optional, List

from recovery.models.dunning import DunningStage, NotificationStatus
from recovery.schemas.failed_payment import FailedPaymentResponse, RetryAttemptResponse


class DunningNotificationResponse(BaseModel):
    """Schema for dunning notification response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage: DunningStage
    scheduled_date: datetime
    status: NotificationStatus
    sent_date: Optional[datetime] = None
    error_message: Optional[str] = None


class PendingCancellationResponse(BaseModel):
    """Schema for pending cancellation response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_ref: str
    scheduled_date: datetime
    processed: bool
    processed_date: Optional[datetime] = None
    last_error: Optional[str] = None


class FailedPaymentDetail(FailedPaymentResponse):
    """Failed payment with its retry history and dunning timeline."""

    retry_attempts: List[RetryAttemptResponse]
    notifications: List[DunningNotificationResponse]
    cancellations: List[PendingCancellationResponse]
