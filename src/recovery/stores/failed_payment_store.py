"""Data access for failed payments and their retry attempts."""
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from recovery.exceptions import StoreUnavailable
from recovery.models.failed_payment import FailedPayment, RetryAttempt, RetryStatus


class FailedPaymentStore:
    """Persistence for FailedPayment records. No policy lives here."""

    def __init__(self, db: AsyncSession):
        """Initialize store with database session."""
        self.db = db

    async def create(self, **fields: Any) -> FailedPayment:
        """Insert a new failed payment and flush it."""
        payment = FailedPayment(**fields)
        self.db.add(payment)
        await self.db.flush()
        await self.db.refresh(payment, attribute_names=["retry_attempts"])
        return payment

    async def get(self, payment_id: UUID) -> Optional[FailedPayment]:
        """
        Get a failed payment with its attempts, bypassing stale identity-map state.

        Args:
            payment_id: Failed payment UUID

        Returns:
            FailedPayment if found, None otherwise
        """
        result = await self.db.execute(
            select(FailedPayment)
            .options(selectinload(FailedPayment.retry_attempts))
            .where(FailedPayment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_source_ref(self, source_ref: str) -> Optional[FailedPayment]:
        result = await self.db.execute(
            select(FailedPayment).where(FailedPayment.source_ref == source_ref)
        )
        return result.scalar_one_or_none()

    async def list_payments(
        self,
        payer_id: Optional[UUID] = None,
        page: int = 1,
        page_size: int = 100,
    ) -> List[FailedPayment]:
        """
        List failed payments, newest first.

        Args:
            payer_id: Filter by payer
            page: Page number
            page_size: Results per page

        Returns:
            List of failed payments
        """
        query = select(FailedPayment)

        if payer_id:
            query = query.where(FailedPayment.payer_id == payer_id)

        query = query.order_by(FailedPayment.failed_at.desc())
        query = query.offset((page - 1) * page_size).limit(page_size)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_due_ids(self, now: datetime, limit: int = 500) -> List[UUID]:
        """
        IDs of payments whose next retry is due.

        Raises:
            StoreUnavailable: If the due list cannot be read
        """
        try:
            result = await self.db.execute(
                select(FailedPayment.id)
                .where(
                    FailedPayment.next_retry_at.isnot(None),
                    FailedPayment.next_retry_at <= now,
                )
                .order_by(FailedPayment.next_retry_at)
                .limit(limit)
            )
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Could not list due retries: {e}") from e
        return list(result.scalars().all())

    async def has_unrecovered(self, payer_id: UUID) -> bool:
        """Whether the payer has a failed payment with no successful attempt."""
        recovered = (
            select(RetryAttempt.id)
            .where(
                RetryAttempt.failed_payment_id == FailedPayment.id,
                RetryAttempt.status == RetryStatus.SUCCEEDED,
            )
            .exists()
        )
        result = await self.db.execute(
            select(FailedPayment.id).where(FailedPayment.payer_id == payer_id, ~recovered).limit(1)
        )
        return result.first() is not None

    async def append_attempt(self, payment: FailedPayment, attempt: RetryAttempt) -> RetryAttempt:
        """
        Append a new attempt to a payment's history.

        The unique (payment, attempt_number) constraint rejects a concurrent
        append of the same slot with IntegrityError on flush.
        """
        payment.retry_attempts.append(attempt)
        await self.db.flush()
        return attempt

    async def claim_attempt(self, attempt: RetryAttempt) -> bool:
        """Compare-and-swap SCHEDULED -> PROCESSING. Returns False if another worker won."""
        return await self._transition(
            attempt,
            expected=RetryStatus.SCHEDULED,
            status=RetryStatus.PROCESSING,
        )

    async def complete_attempt(
        self,
        attempt: RetryAttempt,
        status: RetryStatus,
        executed_date: datetime,
        result_message: str | None = None,
        transaction_ref: str | None = None,
    ) -> bool:
        """Move a PROCESSING attempt to SUCCEEDED or FAILED."""
        if status not in (RetryStatus.SUCCEEDED, RetryStatus.FAILED):
            raise ValueError(f"Cannot complete an attempt as {status.value}")
        return await self._transition(
            attempt,
            expected=RetryStatus.PROCESSING,
            status=status,
            executed_date=executed_date,
            result_message=result_message,
            transaction_ref=transaction_ref,
        )

    async def release_attempt(self, attempt: RetryAttempt, result_message: str | None = None) -> bool:
        """Return a PROCESSING attempt to SCHEDULED so a later sweep picks it up again."""
        return await self._transition(
            attempt,
            expected=RetryStatus.PROCESSING,
            status=RetryStatus.SCHEDULED,
            result_message=result_message,
        )

    async def set_next_retry_at(self, payment: FailedPayment, next_retry_at: Optional[datetime]) -> None:
        payment.next_retry_at = next_retry_at
        await self.db.flush()

    async def _transition(self, attempt: RetryAttempt, expected: RetryStatus, **values: Any) -> bool:
        result = await self.db.execute(
            update(RetryAttempt)
            .where(
                RetryAttempt.id == attempt.id,
                RetryAttempt.status == expected,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.db.refresh(attempt)
        return True
