"""Integration tests for scheduled subscription cancellations."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.adapters.payment_gateway import GatewayResult
from recovery.models.cancellation import PendingCancellation
from recovery.models.dunning import DunningStage, NotificationStatus
from recovery.models.member import Member, MembershipStatus
from recovery.services.cancellation_service import CANCELLATION_REASON, CancellationScheduler
from recovery.services.recovery_coordinator import RecoveryCoordinator
from recovery.stores.cancellation_store import PendingCancellationStore
from recovery.stores.dunning_store import DunningWorkflowStore
from tests.utils.factories import T0, FailureEventFactory
from tests.utils.fakes import FakeGateway


async def _schedule(
    db_session: AsyncSession,
    coordinator: RecoveryCoordinator,
    member: Member,
    now=T0,
) -> PendingCancellation:
    payment = await coordinator.record_failure(FailureEventFactory.create(member.stripe_customer_id, T0), now=T0)
    pending = await coordinator.cancellations.schedule_cancellation(
        member.id, member.stripe_subscription_id, payment.id, now
    )
    await db_session.commit()
    return pending


@pytest.mark.asyncio
async def test_schedule_after_grace_period_with_confirmation_email(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
) -> None:
    pending = await _schedule(db_session, coordinator, member)

    assert pending.scheduled_date == T0 + timedelta(days=7)
    assert pending.processed is False

    stage = await DunningWorkflowStore(db_session).get_stage(pending.failed_payment_id, DunningStage.SUBSCRIPTION_CANCELED)
    assert stage.scheduled_date == pending.scheduled_date
    assert stage.status == NotificationStatus.PENDING


@pytest.mark.asyncio
async def test_one_open_cancellation_per_subscription(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
) -> None:
    await _schedule(db_session, coordinator, member)

    again = await coordinator.cancellations.schedule_cancellation(
        member.id, member.stripe_subscription_id, None, T0 + timedelta(days=1)
    )
    assert again is None

    # The partial unique index backs the check against concurrent schedulers
    with pytest.raises(IntegrityError):
        await PendingCancellationStore(db_session).add(
            PendingCancellation(
                payer_id=member.id,
                subscription_ref=member.stripe_subscription_id,
                scheduled_date=T0 + timedelta(days=8),
                processed=False,
            )
        )
    await db_session.rollback()


@pytest.mark.asyncio
async def test_due_cancellation_cancels_subscription(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    pending = await _schedule(db_session, coordinator, member)

    early = await coordinator.run_due_cancellations(T0 + timedelta(days=6))
    assert early == {"processed": 0, "skipped": 0, "failed": 0, "errors": 0}

    results = await coordinator.run_due_cancellations(T0 + timedelta(days=7))
    assert results["processed"] == 1

    call = gateway.cancellations[0]
    assert call.params == {"subscription_ref": member.stripe_subscription_id, "reason": CANCELLATION_REASON}
    assert call.idempotency_key == f"cancel:{pending.id}"

    pending = await PendingCancellationStore(db_session).get(pending.id)
    assert pending.processed is True
    assert pending.processed_date == T0 + timedelta(days=7)

    await db_session.refresh(member)
    assert member.subscription_status == MembershipStatus.CANCELED

    # Processed rows are never picked up again
    again = await coordinator.run_due_cancellations(T0 + timedelta(days=8))
    assert again["processed"] == 0
    assert len(gateway.cancellations) == 1


@pytest.mark.asyncio
async def test_gateway_failure_is_retried_next_sweep(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    pending = await _schedule(db_session, coordinator, member)
    gateway.cancel_result = GatewayResult.declined("No such subscription")

    results = await coordinator.run_due_cancellations(T0 + timedelta(days=7))
    assert results["failed"] == 1

    pending = await PendingCancellationStore(db_session).get(pending.id)
    assert pending.processed is False
    assert pending.last_error == "No such subscription"

    gateway.cancel_result = GatewayResult.succeeded(transaction_ref="sub_x")
    results = await coordinator.run_due_cancellations(T0 + timedelta(days=7, hours=1))
    assert results["processed"] == 1

    pending = await PendingCancellationStore(db_session).get(pending.id)
    assert pending.last_error is None
    assert len(gateway.cancellations) == 2


@pytest.mark.asyncio
async def test_already_canceled_member_is_marked_processed(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    pending = await _schedule(db_session, coordinator, member)
    member.subscription_status = MembershipStatus.CANCELED
    await db_session.commit()

    results = await coordinator.run_due_cancellations(T0 + timedelta(days=7))

    assert results["processed"] == 1
    assert gateway.cancellations == []
    pending = await PendingCancellationStore(db_session).get(pending.id)
    assert pending.processed is True


@pytest.mark.asyncio
async def test_member_without_live_subscription_is_skipped(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    pending = await _schedule(db_session, coordinator, member)
    member.stripe_subscription_id = None
    await db_session.commit()

    results = await coordinator.run_due_cancellations(T0 + timedelta(days=7))

    assert results["skipped"] == 1
    assert gateway.cancellations == []
    pending = await PendingCancellationStore(db_session).get(pending.id)
    assert pending.processed is False


@pytest.mark.asyncio
async def test_gateway_timeout_counts_as_failure(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    pending = await _schedule(db_session, coordinator, member)

    class StalledGateway(FakeGateway):
        async def cancel_subscription(self, subscription_ref, reason, idempotency_key=None):
            await asyncio.sleep(1.0)
            return await super().cancel_subscription(subscription_ref, reason, idempotency_key)

    scheduler = CancellationScheduler(db_session, StalledGateway(), timeout_seconds=0.05)
    results = await scheduler.run_due_cancellations(T0 + timedelta(days=7))

    assert results["failed"] == 1
    pending = await PendingCancellationStore(db_session).get(pending.id)
    assert "timed out" in pending.last_error


@pytest.mark.asyncio
async def test_subscription_deleted_webhook_marks_member_canceled(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
) -> None:
    assert await coordinator.handle_subscription_deleted(member.stripe_subscription_id) is True

    await db_session.refresh(member)
    assert member.subscription_status == MembershipStatus.CANCELED

    assert await coordinator.handle_subscription_deleted("sub_unknown") is False


@pytest.mark.asyncio
async def test_cancellation_targets_the_live_subscription(
    db_session: AsyncSession,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
) -> None:
    """A subscription replaced during the grace period is the one canceled."""
    pending = await _schedule(db_session, coordinator, member)
    member.stripe_subscription_id = "sub_replacement"
    await db_session.commit()

    results = await coordinator.run_due_cancellations(T0 + timedelta(days=7))

    assert results["processed"] == 1
    assert gateway.cancellations[0].params["subscription_ref"] == "sub_replacement"
    pending = await PendingCancellationStore(db_session).get(pending.id)
    assert pending.subscription_ref != "sub_replacement"
    assert pending.processed is True
