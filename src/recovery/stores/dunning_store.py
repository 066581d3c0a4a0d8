"""Data access for dunning notifications."""
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.exceptions import StoreUnavailable
from recovery.models.dunning import DunningNotification, DunningStage, NotificationStatus


class DunningWorkflowStore:
    """Persistence for the notifications making up each dunning workflow."""

    def __init__(self, db: AsyncSession):
        """Initialize store with database session."""
        self.db = db

    async def add(self, notification: DunningNotification) -> DunningNotification:
        self.db.add(notification)
        await self.db.flush()
        return notification

    async def get(self, notification_id: UUID) -> Optional[DunningNotification]:
        result = await self.db.execute(
            select(DunningNotification)
            .where(DunningNotification.id == notification_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_payment(self, failed_payment_id: UUID) -> List[DunningNotification]:
        """All notifications of one workflow, in schedule order."""
        result = await self.db.execute(
            select(DunningNotification)
            .where(DunningNotification.failed_payment_id == failed_payment_id)
            .order_by(DunningNotification.scheduled_date, DunningNotification.created_at)
        )
        return list(result.scalars().all())

    async def get_stage(self, failed_payment_id: UUID, stage: DunningStage) -> Optional[DunningNotification]:
        result = await self.db.execute(
            select(DunningNotification).where(
                DunningNotification.failed_payment_id == failed_payment_id,
                DunningNotification.stage == stage,
            )
        )
        return result.scalar_one_or_none()

    async def list_due_ids(self, now: datetime, limit: int = 500) -> List[UUID]:
        """
        IDs of PENDING notifications scheduled at or before now.

        Raises:
            StoreUnavailable: If the due list cannot be read
        """
        try:
            result = await self.db.execute(
                select(DunningNotification.id)
                .where(
                    DunningNotification.status == NotificationStatus.PENDING,
                    DunningNotification.scheduled_date <= now,
                )
                .order_by(DunningNotification.scheduled_date)
                .limit(limit)
            )
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Could not list due notifications: {e}") from e
        return list(result.scalars().all())

    async def claim(self, notification: DunningNotification) -> bool:
        """Compare-and-swap PENDING -> SENDING."""
        return await self._transition(notification, NotificationStatus.PENDING, status=NotificationStatus.SENDING)

    async def mark_sent(self, notification: DunningNotification, sent_date: datetime) -> bool:
        return await self._transition(
            notification,
            NotificationStatus.SENDING,
            status=NotificationStatus.SENT,
            sent_date=sent_date,
            error_message=None,
        )

    async def mark_failed(self, notification: DunningNotification, error_message: str) -> bool:
        return await self._transition(
            notification,
            NotificationStatus.SENDING,
            status=NotificationStatus.FAILED,
            error_message=error_message,
        )

    async def release(self, notification: DunningNotification) -> bool:
        """Return a claimed notification to PENDING without sending it."""
        return await self._transition(notification, NotificationStatus.SENDING, status=NotificationStatus.PENDING)

    async def _transition(
        self,
        notification: DunningNotification,
        expected: NotificationStatus,
        **values: Any,
    ) -> bool:
        result = await self.db.execute(
            update(DunningNotification)
            .where(
                DunningNotification.id == notification.id,
                DunningNotification.status == expected,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.db.refresh(notification)
        return True
