"""Read access to member records owned by the portal."""
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.models.member import Member, MembershipStatus


class MemberStore:
    """Member lookups plus the subscription status writes of the recovery engine."""

    def __init__(self, db: AsyncSession):
        """Initialize store with database session."""
        self.db = db

    async def get(self, member_id: UUID) -> Optional[Member]:
        result = await self.db.execute(select(Member).where(Member.id == member_id))
        return result.scalar_one_or_none()

    async def get_by_customer_ref(self, customer_ref: str) -> Optional[Member]:
        result = await self.db.execute(select(Member).where(Member.stripe_customer_id == customer_ref))
        return result.scalar_one_or_none()

    async def get_by_subscription_ref(self, subscription_ref: str) -> Optional[Member]:
        result = await self.db.execute(select(Member).where(Member.stripe_subscription_id == subscription_ref))
        return result.scalars().first()

    async def set_subscription_status(self, member: Member, status: MembershipStatus) -> None:
        member.subscription_status = status
        await self.db.flush()
