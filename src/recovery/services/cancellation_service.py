"""Delayed subscription cancellation at the end of a dunning workflow."""
import asyncio
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.adapters.payment_gateway import GatewayResult, PaymentGateway
from recovery.config import settings
from recovery.metrics import subscription_cancellations_total
from recovery.models.cancellation import PendingCancellation
from recovery.models.dunning import DunningNotification, DunningStage, NotificationStatus
from recovery.models.member import MembershipStatus
from recovery.stores.cancellation_store import PendingCancellationStore
from recovery.stores.dunning_store import DunningWorkflowStore
from recovery.stores.member_store import MemberStore

logger = structlog.get_logger(__name__)

# Window between the final notice and the actual cancellation
CANCELLATION_GRACE_PERIOD = timedelta(days=7)
CANCELLATION_REASON = "Canceled due to payment failure"


class CancellationScheduler:
    """Schedules cancellations and executes them once the grace period is over."""

    def __init__(self, db: AsyncSession, gateway: PaymentGateway, timeout_seconds: Optional[float] = None):
        """Initialize scheduler with database session and payment gateway."""
        self.db = db
        self.gateway = gateway
        self.store = PendingCancellationStore(db)
        self.notifications = DunningWorkflowStore(db)
        self.members = MemberStore(db)
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds

    async def schedule_cancellation(
        self,
        payer_id: UUID,
        subscription_ref: str,
        payment_id: Optional[UUID],
        now: Optional[datetime] = None,
    ) -> Optional[PendingCancellation]:
        """
        Schedule a subscription cancellation after the grace period.

        Also appends the SUBSCRIPTION_CANCELED notification to the payment's
        dunning workflow, due at the same time. Does nothing when the
        subscription already has an unprocessed cancellation. Changes are
        flushed, not committed.

        Args:
            payer_id: Member whose subscription is canceled
            subscription_ref: Processor subscription ID
            payment_id: Failed payment whose workflow triggered the cancellation
            now: Reference time (defaults to utcnow)

        Returns:
            The new PendingCancellation, or None if one was already open

        Raises:
            IntegrityError: If a concurrent worker scheduled the same subscription first
        """
        now = now or datetime.utcnow()

        existing = await self.store.get_open_for_subscription(subscription_ref)
        if existing is not None:
            logger.info(
                "cancellation_already_scheduled",
                subscription_ref=subscription_ref,
                cancellation_id=str(existing.id),
            )
            return None

        pending = await self.store.add(
            PendingCancellation(
                payer_id=payer_id,
                failed_payment_id=payment_id,
                subscription_ref=subscription_ref,
                scheduled_date=now + CANCELLATION_GRACE_PERIOD,
                processed=False,
            )
        )

        if payment_id is not None:
            stage = await self.notifications.get_stage(payment_id, DunningStage.SUBSCRIPTION_CANCELED)
            if stage is None:
                await self.notifications.add(
                    DunningNotification(
                        failed_payment_id=payment_id,
                        payer_id=payer_id,
                        stage=DunningStage.SUBSCRIPTION_CANCELED,
                        scheduled_date=pending.scheduled_date,
                        status=NotificationStatus.PENDING,
                    )
                )

        logger.info(
            "cancellation_scheduled",
            cancellation_id=str(pending.id),
            payer_id=str(payer_id),
            subscription_ref=subscription_ref,
            scheduled_date=pending.scheduled_date.isoformat(),
        )
        return pending

    async def run_due_cancellations(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Execute every unprocessed cancellation whose grace period has ended.

        Each row is handled in its own transaction; one failure never stops
        the others.

        Returns:
            Dict with counts of processed, skipped, failed and errored rows

        Raises:
            StoreUnavailable: If the due list cannot be read
        """
        now = now or datetime.utcnow()
        due_ids = await self.store.list_due_ids(now)

        logger.info("cancellation_sweep_started", due_count=len(due_ids))

        counters = {"processed": 0, "skipped": 0, "failed": 0, "errors": 0}
        for cancellation_id in due_ids:
            try:
                status = await self.process_cancellation(cancellation_id, now)
                counters[status] += 1
            except Exception as e:
                await self.db.rollback()
                counters["errors"] += 1
                logger.exception(
                    "cancellation_processing_error",
                    cancellation_id=str(cancellation_id),
                    exc_info=e,
                )

        logger.info("cancellation_sweep_completed", **counters)
        return counters

    async def process_cancellation(self, cancellation_id: UUID, now: datetime) -> str:
        """Process one pending cancellation. Returns the counter to bump."""
        pending = await self.store.get(cancellation_id)
        if pending is None or pending.processed or pending.scheduled_date > now:
            return "skipped"

        log = logger.bind(cancellation_id=str(pending.id), payer_id=str(pending.payer_id))
        member = await self.members.get(pending.payer_id)

        if member is not None and member.subscription_status == MembershipStatus.CANCELED:
            await self.store.mark_processed(pending, now)
            await self.db.commit()
            log.info("cancellation_already_canceled")
            subscription_cancellations_total.labels(status="processed").inc()
            return "processed"

        subscription_ref = member.stripe_subscription_id if member is not None else None
        if not subscription_ref:
            log.warning("cancellation_subscription_missing", subscription_ref=pending.subscription_ref)
            subscription_cancellations_total.labels(status="skipped").inc()
            return "skipped"

        try:
            result = await asyncio.wait_for(
                self.gateway.cancel_subscription(
                    subscription_ref,
                    CANCELLATION_REASON,
                    idempotency_key=f"cancel:{pending.id}",
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            result = GatewayResult.transient(f"Gateway call timed out after {self.timeout_seconds}s")

        if not result.ok:
            await self.store.record_error(pending, result.message)
            await self.db.commit()
            log.warning(
                "subscription_cancellation_failed",
                subscription_ref=subscription_ref,
                outcome=result.outcome.value,
                error=result.message,
            )
            subscription_cancellations_total.labels(status="failed").inc()
            return "failed"

        await self.members.set_subscription_status(member, MembershipStatus.CANCELED)
        await self.store.mark_processed(pending, now)
        await self.db.commit()

        log.info("subscription_canceled", subscription_ref=subscription_ref)
        subscription_cancellations_total.labels(status="processed").inc()
        return "processed"
