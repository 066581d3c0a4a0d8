"""Failed payment and retry attempt models."""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship
import enum

from recovery.models.base import Base


class FailureKind(enum.Enum):
    """Closed taxonomy of decline reasons."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    CARD_DECLINED = "card_declined"
    EXPIRED_CARD = "expired_card"
    INVALID_CVC = "invalid_cvc"
    PROCESSING_ERROR = "processing_error"
    UNKNOWN = "unknown"


class RetryStatus(enum.Enum):
    """Retry attempt status."""

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailedPayment(Base):
    """
    One declined charge and its retry history.

    Never deleted; the attempts form the audit trail of the recovery.
    """

    __tablename__ = "failed_payments"

    payer_id = Column(Uuid(as_uuid=True), ForeignKey("members.id"), nullable=False, index=True)
    source_ref = Column(String, nullable=False, unique=True)  # Processor reference of the triggering failure
    amount = Column(Integer, nullable=False)  # Amount in minor units
    currency = Column(String(3), nullable=False, default="USD")
    failure_kind = Column(SQLEnum(FailureKind), nullable=False, default=FailureKind.UNKNOWN)
    failure_message = Column(Text, nullable=True)
    failed_at = Column(DateTime, nullable=False)
    payment_method_ref = Column(String, nullable=True)
    customer_ref = Column(String, nullable=True)
    subscription_ref = Column(String, nullable=True, index=True)
    invoice_ref = Column(String, nullable=True)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True, index=True)

    # Relationships
    payer = relationship("Member")
    retry_attempts = relationship(
        "RetryAttempt",
        back_populates="failed_payment",
        order_by="RetryAttempt.attempt_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def latest_attempt(self) -> "RetryAttempt | None":
        return self.retry_attempts[-1] if self.retry_attempts else None

    @property
    def status(self) -> RetryStatus:
        """
        Recovery status derived from the newest attempt.

        A payment with no attempts, or whose next attempt is merely scheduled,
        is still FAILED.
        """
        latest = self.latest_attempt
        if latest is None or latest.status == RetryStatus.SCHEDULED:
            return RetryStatus.FAILED
        return latest.status

    def __repr__(self) -> str:
        """String representation."""
        return f"<FailedPayment(id={self.id}, payer_id={self.payer_id}, kind={self.failure_kind.value}, amount={self.amount})>"


class RetryAttempt(Base):
    """A scheduled or executed retry of a failed payment."""

    __tablename__ = "retry_attempts"
    __table_args__ = (
        UniqueConstraint("failed_payment_id", "attempt_number", name="uq_retry_attempts_payment_number"),
    )

    failed_payment_id = Column(
        Uuid(as_uuid=True), ForeignKey("failed_payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt_number = Column(Integer, nullable=False)
    scheduled_date = Column(DateTime, nullable=False)
    status = Column(SQLEnum(RetryStatus), nullable=False, default=RetryStatus.SCHEDULED, index=True)
    is_manual = Column(Boolean, nullable=False, default=False)
    executed_date = Column(DateTime, nullable=True)
    result_message = Column(Text, nullable=True)
    transaction_ref = Column(String, nullable=True)

    # Relationships
    failed_payment = relationship("FailedPayment", back_populates="retry_attempts")

    def __repr__(self) -> str:
        """String representation."""
        return f"<RetryAttempt(id={self.id}, number={self.attempt_number}, status={self.status.value})>"
