"""Unit tests for the retry backoff policy."""
from datetime import timedelta

import pytest

from recovery.models.failed_payment import FailedPayment, RetryAttempt, RetryStatus
from recovery.services.retry_scheduler import RetryScheduler
from tests.utils.factories import T0


def _payment(*statuses: RetryStatus, manual: tuple[int, ...] = (), max_retries: int = 3) -> FailedPayment:
    payment = FailedPayment(failed_at=T0, max_retries=max_retries, amount=2900, currency="USD")
    for number, status in enumerate(statuses, start=1):
        payment.retry_attempts.append(
            RetryAttempt(
                attempt_number=number,
                scheduled_date=T0 + timedelta(days=number),
                status=status,
                is_manual=number in manual,
            )
        )
    return payment


def test_offsets_are_cumulative_days_from_failure() -> None:
    scheduler = RetryScheduler([1, 5, 10])

    assert scheduler.offset(1) == timedelta(days=1)
    assert scheduler.offset(2) == timedelta(days=5)
    assert scheduler.offset(3) == timedelta(days=10)


def test_offsets_past_the_table_keep_the_last_gap() -> None:
    scheduler = RetryScheduler([1, 5, 10])

    assert scheduler.offset(4) == timedelta(days=15)
    assert scheduler.offset(5) == timedelta(days=20)


def test_offset_rejects_ordinal_zero() -> None:
    with pytest.raises(ValueError):
        RetryScheduler([1, 5, 10]).offset(0)


def test_first_attempt_is_due_one_day_after_failure() -> None:
    attempt = RetryScheduler([1, 5, 10]).next_attempt(_payment())

    assert attempt is not None
    assert attempt.attempt_number == 1
    assert attempt.scheduled_date == T0 + timedelta(days=1)
    assert attempt.status == RetryStatus.SCHEDULED
    assert attempt.is_manual is False


def test_next_attempt_follows_failed_history() -> None:
    attempt = RetryScheduler([1, 5, 10]).next_attempt(_payment(RetryStatus.FAILED, RetryStatus.FAILED))

    assert attempt.attempt_number == 3
    assert attempt.scheduled_date == T0 + timedelta(days=10)


def test_scheduled_attempt_is_reused() -> None:
    payment = _payment(RetryStatus.FAILED, RetryStatus.SCHEDULED)

    assert RetryScheduler([1, 5, 10]).next_attempt(payment) is payment.retry_attempts[-1]


@pytest.mark.parametrize("status", [RetryStatus.PROCESSING, RetryStatus.SUCCEEDED])
def test_no_attempt_while_in_flight_or_recovered(status: RetryStatus) -> None:
    assert RetryScheduler([1, 5, 10]).next_attempt(_payment(RetryStatus.FAILED, status)) is None


def test_budget_is_exhausted_after_max_retries() -> None:
    scheduler = RetryScheduler([1, 5, 10])
    payment = _payment(RetryStatus.FAILED, RetryStatus.FAILED, RetryStatus.FAILED)

    assert scheduler.next_attempt(payment) is None
    assert scheduler.next_retry_date(payment) is None
    assert scheduler.is_exhausted(payment)


def test_manual_attempts_do_not_consume_the_automatic_budget() -> None:
    scheduler = RetryScheduler([1, 5, 10])
    payment = _payment(RetryStatus.FAILED, RetryStatus.FAILED, manual=(1,))

    attempt = scheduler.next_attempt(payment)

    assert scheduler.automatic_attempts(payment) == 1
    assert attempt.attempt_number == 3
    # Second automatic retry slot
    assert attempt.scheduled_date == T0 + timedelta(days=5)


def test_next_due_attempt_respects_scheduled_date() -> None:
    scheduler = RetryScheduler([1, 5, 10])
    payment = _payment()

    assert scheduler.next_due_attempt(payment, T0 + timedelta(hours=23)) is None
    assert scheduler.next_due_attempt(payment, T0 + timedelta(days=1)) is not None
