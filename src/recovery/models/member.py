"""Member model: the payer and the subscription the recovery engine acts on."""
from sqlalchemy import Column, String, Enum as SQLEnum
import enum

from recovery.models.base import Base


class MembershipStatus(enum.Enum):
    """Local mirror of the member's subscription state."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Member(Base):
    """
    Gym member profile.

    Owned by the portal; the recovery engine only reads contact details and
    processor references, and keeps the subscription status in step with the
    recovery of its payments.
    """

    __tablename__ = "members"

    email = Column(String, nullable=False, index=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    stripe_customer_id = Column(String, nullable=True, unique=True, index=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    subscription_status = Column(SQLEnum(MembershipStatus), nullable=False, default=MembershipStatus.ACTIVE)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        """String representation."""
        return f"<Member(id={self.id}, email={self.email}, status={self.subscription_status.value})>"
