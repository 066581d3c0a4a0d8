"""Pydantic schema for processor-reported payment failures."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class FailureEvent(BaseModel):
    """A declined payment as reported by the payment processor."""

    source_ref: str = Field(..., description="Processor reference of the failure (invoice or payment intent ID)")
    payer_id: Optional[UUID] = Field(None, description="Member ID, when already known")
    customer_ref: Optional[str] = Field(None, description="Stripe customer ID used to resolve the member")
    amount: int = Field(..., description="Amount in minor units", ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    raw_reason: Optional[str] = Field(None, description="Processor decline code")
    failure_message: Optional[str] = None
    payment_method_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    invoice_ref: Optional[str] = None
    occurred_at: Optional[datetime] = Field(None, description="When the charge failed (naive UTC)")

    @model_validator(mode="after")
    def _payer_resolvable(self) -> "FailureEvent":
        if self.payer_id is None and not self.customer_ref:
            raise ValueError("Either payer_id or customer_ref is required")
        return self
