"""Background sweeps driving payment recovery.

Each job opens its own database session and runs one coordinator sweep:
- Retries: every 10 minutes
- Dunning notifications: hourly
- Subscription cancellations: hourly

Usage:
    arq recovery.workers.recovery_sweeps.WorkerSettings
"""
from typing import Any

import structlog
from arq import cron
from arq.connections import RedisSettings

from recovery.adapters.stripe_adapter import StripeAdapter
from recovery.config import settings
from recovery.database import get_async_session
from recovery.integrations.notification_service import NotificationService
from recovery.middleware.logging import setup_logging
from recovery.services.recovery_coordinator import RecoveryCoordinator

logger = structlog.get_logger(__name__)


async def process_payment_retries(ctx: dict[str, Any]) -> dict[str, int]:
    """Run the due payment retries."""
    async with get_async_session() as db:
        coordinator = RecoveryCoordinator(db, ctx["gateway"], ctx["notifier"])
        return await coordinator.run_due_retries()


async def process_dunning_notifications(ctx: dict[str, Any]) -> dict[str, int]:
    """Send the due dunning notifications."""
    async with get_async_session() as db:
        coordinator = RecoveryCoordinator(db, ctx["gateway"], ctx["notifier"])
        return await coordinator.run_due_notifications()


async def process_subscription_cancellations(ctx: dict[str, Any]) -> dict[str, int]:
    """Execute the due subscription cancellations."""
    async with get_async_session() as db:
        coordinator = RecoveryCoordinator(db, ctx["gateway"], ctx["notifier"])
        return await coordinator.run_due_cancellations()


async def startup(ctx: dict[str, Any]) -> None:
    setup_logging()
    ctx["gateway"] = StripeAdapter()
    ctx["notifier"] = NotificationService()
    logger.info("recovery_worker_started", env=settings.app_env)


async def shutdown(ctx: dict[str, Any]) -> None:
    logger.info("recovery_worker_stopped")


class WorkerSettings:
    """ARQ worker settings for the recovery sweeps."""

    functions = [
        process_payment_retries,
        process_dunning_notifications,
        process_subscription_cancellations,
    ]

    cron_jobs = [
        cron(process_payment_retries, minute={0, 10, 20, 30, 40, 50}, timeout=540, unique=True),
        cron(process_dunning_notifications, minute=5, timeout=1800, unique=True),
        cron(process_subscription_cancellations, minute=15, timeout=1800, unique=True),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(settings.arq_redis_url)
