"""SQLAlchemy ORM models for the payment recovery engine."""
# Import all models here to ensure they are registered with Alembic

from recovery.models.base import Base
from recovery.models.member import Member, MembershipStatus
from recovery.models.failed_payment import FailedPayment, FailureKind, RetryAttempt, RetryStatus
from recovery.models.dunning import DunningNotification, DunningStage, NotificationStatus
from recovery.models.cancellation import PendingCancellation

__all__ = [
    "Base",
    "Member",
    "MembershipStatus",
    "FailedPayment",
    "FailureKind",
    "RetryAttempt",
    "RetryStatus",
    "DunningNotification",
    "DunningStage",
    "NotificationStatus",
    "PendingCancellation",
]
