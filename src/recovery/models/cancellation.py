"""Pending subscription cancellation model."""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text, Uuid, text

from recovery.models.base import Base


class PendingCancellation(Base):
    """
    Subscription cancellation scheduled by the end of a dunning workflow.

    At most one unprocessed row may exist per subscription.
    """

    __tablename__ = "pending_cancellations"
    __table_args__ = (
        Index(
            "uq_pending_cancellations_open_subscription",
            "subscription_ref",
            unique=True,
            postgresql_where=text("NOT processed"),
            sqlite_where=text("NOT processed"),
        ),
    )

    payer_id = Column(Uuid(as_uuid=True), ForeignKey("members.id"), nullable=False, index=True)
    failed_payment_id = Column(Uuid(as_uuid=True), ForeignKey("failed_payments.id"), nullable=True, index=True)
    subscription_ref = Column(String, nullable=False)
    scheduled_date = Column(DateTime, nullable=False, index=True)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_date = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<PendingCancellation(id={self.id}, subscription={self.subscription_ref}, processed={self.processed})>"
