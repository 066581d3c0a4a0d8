"""Tests for the ARQ jobs that drive the recovery sweeps."""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest

from recovery.models.member import Member
from recovery.services.recovery_coordinator import RecoveryCoordinator
from recovery.workers import recovery_sweeps
from tests.utils.factories import FailureEventFactory
from tests.utils.fakes import FakeGateway, FakeNotifier


@pytest.fixture
def worker_ctx(monkeypatch, session_factory, gateway: FakeGateway, notifier: FakeNotifier) -> dict:
    """Job context as startup() would build it, with sessions bound to the test database."""

    @asynccontextmanager
    async def test_session():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(recovery_sweeps, "get_async_session", test_session)
    return {"gateway": gateway, "notifier": notifier}


@pytest.mark.asyncio
async def test_jobs_run_each_sweep(
    worker_ctx: dict,
    member: Member,
    coordinator: RecoveryCoordinator,
    gateway: FakeGateway,
    notifier: FakeNotifier,
) -> None:
    failed_at = datetime.utcnow() - timedelta(days=4)
    await coordinator.record_failure(FailureEventFactory.create(member.stripe_customer_id, failed_at), now=failed_at)

    retries = await recovery_sweeps.process_payment_retries(worker_ctx)
    notifications = await recovery_sweeps.process_dunning_notifications(worker_ctx)
    cancellations = await recovery_sweeps.process_subscription_cancellations(worker_ctx)

    assert retries["attempted"] == 1
    assert retries["succeeded"] == 1
    assert len(gateway.calls) == 1
    assert notifications["sent"] == 1
    assert notifier.subjects[-1] == "Payment Reminder: Update Your Payment Method"
    assert cancellations["processed"] == 0


@pytest.mark.asyncio
async def test_jobs_with_nothing_due(worker_ctx: dict, gateway: FakeGateway) -> None:
    retries = await recovery_sweeps.process_payment_retries(worker_ctx)

    assert retries["attempted"] == 0
    assert gateway.calls == []


def test_worker_schedules_every_sweep() -> None:
    scheduled = {job.coroutine for job in recovery_sweeps.WorkerSettings.cron_jobs}

    assert scheduled == set(recovery_sweeps.WorkerSettings.functions)
