"""Retry scheduling policy for failed payments."""
from datetime import datetime, timedelta
from typing import Optional, Sequence

from recovery.config import settings
from recovery.models.failed_payment import FailedPayment, RetryAttempt, RetryStatus


class RetryScheduler:
    """
    Decides when the next automatic retry of a failed payment is due.

    Retry days are cumulative offsets from the original failure:
    - Retry 1: failure + 1 day
    - Retry 2: failure + 5 days
    - Retry 3: failure + 10 days

    Ordinals past the end of the table keep stepping by the last gap. The
    scheduler never writes anything; it only reads the attempt history.
    """

    def __init__(self, backoff_days: Optional[Sequence[int]] = None):
        """Initialize scheduler with the backoff table (days after failure)."""
        self.backoff_days = list(backoff_days or settings.retry_backoff_days)

    def offset(self, ordinal: int) -> timedelta:
        """
        Delay from the failure to the given automatic retry.

        Args:
            ordinal: 1-based number of the automatic retry

        Returns:
            Offset from failed_at
        """
        if ordinal < 1:
            raise ValueError("Retry ordinal starts at 1")

        table = self.backoff_days
        if ordinal <= len(table):
            return timedelta(days=table[ordinal - 1])

        last_gap = table[-1] - table[-2] if len(table) > 1 else table[-1]
        return timedelta(days=table[-1] + last_gap * (ordinal - len(table)))

    def automatic_attempts(self, payment: FailedPayment) -> int:
        return sum(1 for attempt in payment.retry_attempts if not attempt.is_manual)

    def is_exhausted(self, payment: FailedPayment) -> bool:
        """True when every automatic retry has been used and none is pending."""
        latest = payment.latest_attempt
        if latest is not None and latest.status in (RetryStatus.SCHEDULED, RetryStatus.PROCESSING):
            return False
        return self.automatic_attempts(payment) >= payment.max_retries

    def next_attempt(self, payment: FailedPayment) -> Optional[RetryAttempt]:
        """
        Next attempt to run, regardless of whether it is due yet.

        Returns:
            The latest attempt if it is still SCHEDULED, a new unsaved attempt
            for the next backoff slot, or None when the payment is recovered,
            in flight or out of automatic retries
        """
        latest = payment.latest_attempt

        if latest is not None:
            if latest.status == RetryStatus.SCHEDULED:
                return latest
            if latest.status in (RetryStatus.PROCESSING, RetryStatus.SUCCEEDED):
                return None

        ordinal = self.automatic_attempts(payment) + 1
        if ordinal > payment.max_retries:
            return None

        return RetryAttempt(
            attempt_number=len(payment.retry_attempts) + 1,
            scheduled_date=payment.failed_at + self.offset(ordinal),
            status=RetryStatus.SCHEDULED,
            is_manual=False,
        )

    def next_due_attempt(self, payment: FailedPayment, now: datetime) -> Optional[RetryAttempt]:
        """Next attempt if its scheduled date has been reached, else None."""
        attempt = self.next_attempt(payment)
        if attempt is None or attempt.scheduled_date > now:
            return None
        return attempt

    def next_retry_date(self, payment: FailedPayment) -> Optional[datetime]:
        attempt = self.next_attempt(payment)
        return attempt.scheduled_date if attempt is not None else None
