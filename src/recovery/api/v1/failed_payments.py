"""Admin API for failed payments and manual retries."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.api.deps import get_coordinator
from recovery.database import get_db
from recovery.exceptions import RecordNotFound
from recovery.schemas.dunning import (
    DunningNotificationResponse,
    FailedPaymentDetail,
    PendingCancellationResponse,
)
from recovery.schemas.failed_payment import (
    FailedPaymentList,
    FailedPaymentResponse,
    ManualRetryResponse,
    RetryAttemptResponse,
)
from recovery.services.recovery_coordinator import RecoveryCoordinator
from recovery.stores.cancellation_store import PendingCancellationStore
from recovery.stores.dunning_store import DunningWorkflowStore
from recovery.stores.failed_payment_store import FailedPaymentStore

router = APIRouter(prefix="/failed-payments", tags=["Failed Payments"])


@router.get("", response_model=FailedPaymentList)
async def list_failed_payments(
    payer_id: Optional[UUID] = Query(None, description="Filter by member"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> FailedPaymentList:
    """List failed payments, newest first."""
    payments = await FailedPaymentStore(db).list_payments(payer_id=payer_id, page=page, page_size=page_size)
    return FailedPaymentList(
        items=[FailedPaymentResponse.model_validate(p) for p in payments],
        page=page,
        page_size=page_size,
    )


@router.get("/{payment_id}", response_model=FailedPaymentDetail)
async def get_failed_payment(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> FailedPaymentDetail:
    """
    Get a failed payment with its retry history and dunning timeline.

    Raises:
        RecordNotFound: If the payment does not exist (404)
    """
    payment = await FailedPaymentStore(db).get(payment_id)
    if payment is None:
        raise RecordNotFound(f"Failed payment {payment_id} not found")

    notifications = await DunningWorkflowStore(db).list_for_payment(payment_id)
    cancellations = await PendingCancellationStore(db).list_for_payment(payment_id)

    return FailedPaymentDetail(
        **FailedPaymentResponse.model_validate(payment).model_dump(),
        retry_attempts=[RetryAttemptResponse.model_validate(a) for a in payment.retry_attempts],
        notifications=[DunningNotificationResponse.model_validate(n) for n in notifications],
        cancellations=[PendingCancellationResponse.model_validate(c) for c in cancellations],
    )


@router.post("/{payment_id}/retry", response_model=ManualRetryResponse)
async def retry_failed_payment(
    payment_id: UUID,
    coordinator: RecoveryCoordinator = Depends(get_coordinator),
) -> ManualRetryResponse:
    """
    Retry a failed payment immediately.

    Returns 404 for unknown payments and 409 when the payment is not in a
    failed state or a retry is already running.
    """
    result = await coordinator.manual_retry(payment_id)
    return ManualRetryResponse(
        payment_id=result.payment_id,
        attempt_id=result.attempt_id,
        attempt_number=result.attempt_number,
        outcome=result.outcome.value,
        attempt_status=result.attempt_status,
        message=result.message,
        transaction_ref=result.transaction_ref,
    )
