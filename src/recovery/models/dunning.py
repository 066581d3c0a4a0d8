"""Dunning notification model."""
from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
import enum

from recovery.models.base import Base


class DunningStage(enum.Enum):
    """Escalation stages of a dunning workflow, in send order."""

    INITIAL_FAILURE = "initial_failure"
    FIRST_REMINDER = "first_reminder"
    SECOND_REMINDER = "second_reminder"
    FINAL_NOTICE = "final_notice"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class NotificationStatus(enum.Enum):
    """Delivery status of a dunning notification."""

    PENDING = "pending"
    SENDING = "sending"  # Claimed by a sweep worker
    SENT = "sent"
    FAILED = "failed"


class DunningNotification(Base):
    """
    One scheduled email of a dunning workflow.

    A workflow is the set of notifications sharing a failed_payment_id.
    """

    __tablename__ = "dunning_notifications"
    __table_args__ = (
        UniqueConstraint("failed_payment_id", "stage", name="uq_dunning_notifications_payment_stage"),
    )

    failed_payment_id = Column(
        Uuid(as_uuid=True), ForeignKey("failed_payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payer_id = Column(Uuid(as_uuid=True), ForeignKey("members.id"), nullable=False, index=True)
    stage = Column(SQLEnum(DunningStage), nullable=False)
    scheduled_date = Column(DateTime, nullable=False, index=True)
    status = Column(SQLEnum(NotificationStatus), nullable=False, default=NotificationStatus.PENDING, index=True)
    sent_date = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Relationships
    failed_payment = relationship("FailedPayment")

    def __repr__(self) -> str:
        """String representation."""
        return f"<DunningNotification(id={self.id}, stage={self.stage.value}, status={self.status.value})>"
