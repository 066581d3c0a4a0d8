"""Data access for pending subscription cancellations."""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.exceptions import StoreUnavailable
from recovery.models.cancellation import PendingCancellation


class PendingCancellationStore:
    """Persistence for PendingCancellation rows."""

    def __init__(self, db: AsyncSession):
        """Initialize store with database session."""
        self.db = db

    async def add(self, pending: PendingCancellation) -> PendingCancellation:
        """
        Insert a pending cancellation.

        The partial unique index rejects a second open row for the same
        subscription with IntegrityError on flush.
        """
        self.db.add(pending)
        await self.db.flush()
        return pending

    async def get(self, cancellation_id: UUID) -> Optional[PendingCancellation]:
        result = await self.db.execute(
            select(PendingCancellation)
            .where(PendingCancellation.id == cancellation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_open_for_subscription(self, subscription_ref: str) -> Optional[PendingCancellation]:
        result = await self.db.execute(
            select(PendingCancellation).where(
                PendingCancellation.subscription_ref == subscription_ref,
                PendingCancellation.processed.is_(False),
            )
        )
        return result.scalar_one_or_none()

    async def list_for_payment(self, failed_payment_id: UUID) -> List[PendingCancellation]:
        result = await self.db.execute(
            select(PendingCancellation)
            .where(PendingCancellation.failed_payment_id == failed_payment_id)
            .order_by(PendingCancellation.scheduled_date)
        )
        return list(result.scalars().all())

    async def list_due_ids(self, now: datetime, limit: int = 200) -> List[UUID]:
        """
        IDs of unprocessed cancellations scheduled at or before now.

        Raises:
            StoreUnavailable: If the due list cannot be read
        """
        try:
            result = await self.db.execute(
                select(PendingCancellation.id)
                .where(
                    PendingCancellation.processed.is_(False),
                    PendingCancellation.scheduled_date <= now,
                )
                .order_by(PendingCancellation.scheduled_date)
                .limit(limit)
            )
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Could not list due cancellations: {e}") from e
        return list(result.scalars().all())

    async def mark_processed(self, pending: PendingCancellation, processed_date: datetime) -> bool:
        """Conditional update: only an unprocessed row can be marked processed."""
        result = await self.db.execute(
            update(PendingCancellation)
            .where(
                PendingCancellation.id == pending.id,
                PendingCancellation.processed.is_(False),
            )
            .values(processed=True, processed_date=processed_date, last_error=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.db.refresh(pending)
        return True

    async def record_error(self, pending: PendingCancellation, error: str) -> None:
        pending.last_error = error
        await self.db.flush()
