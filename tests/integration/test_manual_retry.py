"""Integration tests for admin-triggered retries."""
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.adapters.payment_gateway import GatewayResult
from recovery.exceptions import NotRetryable, RecordNotFound
from recovery.models.failed_payment import FailedPayment, RetryStatus
from recovery.models.member import Member
from recovery.services.recovery_coordinator import RecoveryCoordinator
from recovery.services.retry_executor import ExecutionOutcome
from recovery.stores.failed_payment_store import FailedPaymentStore
from tests.utils.factories import T0, FailureEventFactory
from tests.utils.fakes import FakeGateway

DECLINED = GatewayResult.declined("Your card was declined.", decline_code="card_declined")


async def _record(coordinator: RecoveryCoordinator, member: Member) -> FailedPayment:
    return await coordinator.record_failure(FailureEventFactory.create(member.stripe_customer_id, T0), now=T0)


@pytest.mark.asyncio
async def test_manual_retry_succeeds_immediately(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    payment = await _record(coordinator, member)
    now = T0 + timedelta(hours=2)

    result = await coordinator.manual_retry(payment.id, now)

    assert result.outcome == ExecutionOutcome.SUCCEEDED
    assert result.attempt_status == RetryStatus.SUCCEEDED
    assert result.attempt_number == 1
    assert result.transaction_ref == "pi_1"

    payment = await FailedPaymentStore(db_session).get(payment.id)
    attempt = payment.retry_attempts[0]
    assert attempt.is_manual is True
    assert attempt.scheduled_date == now
    assert attempt.executed_date == now
    assert payment.status == RetryStatus.SUCCEEDED
    assert payment.next_retry_at is None


@pytest.mark.asyncio
async def test_declined_manual_retry_keeps_automatic_schedule(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    """A manual attempt does not use up one of the automatic retries."""
    gateway.results = [DECLINED]
    payment = await _record(coordinator, member)

    result = await coordinator.manual_retry(payment.id, T0 + timedelta(hours=2))

    assert result.outcome == ExecutionOutcome.FAILED
    assert result.message == "Your card was declined."

    payment = await FailedPaymentStore(db_session).get(payment.id)
    assert payment.status == RetryStatus.FAILED
    assert payment.next_retry_at == T0 + timedelta(days=1)

    await coordinator.run_due_retries(T0 + timedelta(days=1))
    payment = await FailedPaymentStore(db_session).get(payment.id)
    assert [(a.attempt_number, a.is_manual) for a in payment.retry_attempts] == [(1, True), (2, False)]


@pytest.mark.asyncio
async def test_manual_retry_uses_pending_scheduled_attempt(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    """An automatic attempt deferred by a gateway fault is run now instead of adding another."""
    gateway.results = [GatewayResult.transient("timeout")]
    payment = await _record(coordinator, member)
    await coordinator.run_due_retries(T0 + timedelta(days=1))

    result = await coordinator.manual_retry(payment.id, T0 + timedelta(days=1, hours=3))

    assert result.outcome == ExecutionOutcome.SUCCEEDED
    assert result.attempt_number == 1
    assert gateway.calls[0].idempotency_key == gateway.calls[1].idempotency_key


@pytest.mark.asyncio
async def test_exhausted_payment_can_still_be_retried_manually(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    gateway.results = [DECLINED, DECLINED, DECLINED]
    payment = await _record(coordinator, member)
    for day in (1, 5, 10):
        await coordinator.run_due_retries(T0 + timedelta(days=day))

    result = await coordinator.manual_retry(payment.id, T0 + timedelta(days=12))

    assert result.outcome == ExecutionOutcome.SUCCEEDED
    assert result.attempt_number == 4


@pytest.mark.asyncio
async def test_only_one_manual_attempt_per_payment(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    """Retry history stays within the automatic budget plus one out-of-band attempt."""
    gateway.results = [DECLINED, DECLINED, DECLINED, DECLINED]
    payment = await _record(coordinator, member)
    for day in (1, 5, 10):
        await coordinator.run_due_retries(T0 + timedelta(days=day))

    result = await coordinator.manual_retry(payment.id, T0 + timedelta(days=11))
    assert result.outcome == ExecutionOutcome.FAILED

    with pytest.raises(NotRetryable):
        await coordinator.manual_retry(payment.id, T0 + timedelta(days=12))

    assert len(gateway.calls) == 4
    payment = await FailedPaymentStore(db_session).get(payment.id)
    assert len(payment.retry_attempts) == payment.max_retries + 1
    assert [a.is_manual for a in payment.retry_attempts] == [False, False, False, True]


@pytest.mark.asyncio
async def test_unknown_payment_is_not_found(coordinator: RecoveryCoordinator) -> None:
    with pytest.raises(RecordNotFound):
        await coordinator.manual_retry(uuid4())


@pytest.mark.asyncio
async def test_recovered_payment_is_not_retryable(
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    payment = await _record(coordinator, member)
    await coordinator.manual_retry(payment.id, T0 + timedelta(hours=1))

    with pytest.raises(NotRetryable):
        await coordinator.manual_retry(payment.id, T0 + timedelta(hours=2))

    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_in_flight_payment_is_not_retryable(
    db_session: AsyncSession,
    session_factory,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    """A manual retry arriving while a sweep holds the attempt is rejected without a charge."""
    payment = await _record(coordinator, member)
    errors = []

    async def admin_clicks_retry() -> None:
        async with session_factory() as admin_session:
            admin = RecoveryCoordinator(admin_session, gateway, coordinator.dunning.notifier)
            try:
                await admin.manual_retry(payment.id, T0 + timedelta(days=1))
            except NotRetryable as e:
                errors.append(e)

    gateway.hook = admin_clicks_retry
    await coordinator.run_due_retries(T0 + timedelta(days=1))

    assert len(errors) == 1
    assert len(gateway.calls) == 1
