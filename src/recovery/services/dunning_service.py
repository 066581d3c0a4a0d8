"""Dunning workflow: scheduled payer notifications after a failed payment."""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.config import settings
from recovery.exceptions import NotifierFailure
from recovery.integrations.notification_service import NotificationResult, Notifier
from recovery.metrics import dunning_notifications_total
from recovery.models.dunning import DunningNotification, DunningStage, NotificationStatus
from recovery.models.failed_payment import FailedPayment
from recovery.models.member import Member
from recovery.services.cancellation_service import CancellationScheduler
from recovery.services.dunning_content import build_email
from recovery.stores.cancellation_store import PendingCancellationStore
from recovery.stores.dunning_store import DunningWorkflowStore
from recovery.stores.failed_payment_store import FailedPaymentStore
from recovery.stores.member_store import MemberStore

logger = structlog.get_logger(__name__)

# Dunning schedule: stage -> offset from the payment failure
DUNNING_SCHEDULE = [
    (DunningStage.INITIAL_FAILURE, timedelta(days=0)),
    (DunningStage.FIRST_REMINDER, timedelta(days=3)),
    (DunningStage.SECOND_REMINDER, timedelta(days=7)),
    (DunningStage.FINAL_NOTICE, timedelta(days=14)),
]


@dataclass
class DunningWorkflow:
    """The notifications of one failed payment, in schedule order."""

    failed_payment_id: UUID
    notifications: List[DunningNotification] = field(default_factory=list)

    def stage(self, stage: DunningStage) -> Optional[DunningNotification]:
        return next((n for n in self.notifications if n.stage == stage), None)

    @property
    def is_complete(self) -> bool:
        return all(
            n.status in (NotificationStatus.SENT, NotificationStatus.FAILED)
            for n in self.notifications
        )


class DunningWorkflowEngine:
    """
    Materializes dunning workflows and sends their due notifications.

    Progressive dunning process:
    - Day 0: Payment failed, action required
    - Day 3: Friendly reminder
    - Day 7: Urgent reminder
    - Day 14: Final notice, cancellation scheduled 7 days later
    - Cancellation day: Membership canceled confirmation
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: Notifier,
        cancellations: CancellationScheduler,
        timeout_seconds: Optional[float] = None,
    ):
        """Initialize engine with database session, notifier and cancellation scheduler."""
        self.db = db
        self.notifier = notifier
        self.cancellations = cancellations
        self.store = DunningWorkflowStore(db)
        self.payments = FailedPaymentStore(db)
        self.members = MemberStore(db)
        self.pending_cancellations = PendingCancellationStore(db)
        self.timeout_seconds = timeout_seconds or settings.notifier_timeout_seconds

    async def start_workflow(self, payment: FailedPayment, now: Optional[datetime] = None) -> DunningWorkflow:
        """
        Create the four scheduled notifications and send the first one.

        Stages that already exist are left untouched, so calling this twice
        for the same payment is harmless. The workflow is committed before the
        initial email goes out; a send problem never loses the workflow.

        Args:
            payment: Newly recorded failed payment
            now: Reference time (defaults to utcnow)

        Returns:
            The payment's dunning workflow
        """
        now = now or datetime.utcnow()
        payment_id = payment.id

        existing = {n.stage for n in await self.store.list_for_payment(payment_id)}
        for stage, offset in DUNNING_SCHEDULE:
            if stage in existing:
                continue
            self.db.add(
                DunningNotification(
                    failed_payment_id=payment_id,
                    payer_id=payment.payer_id,
                    stage=stage,
                    scheduled_date=payment.failed_at + offset,
                    status=NotificationStatus.PENDING,
                )
            )
        await self.db.commit()

        logger.info("dunning_workflow_started", payment_id=str(payment_id))

        initial = await self.store.get_stage(payment_id, DunningStage.INITIAL_FAILURE)
        if initial is not None and initial.status == NotificationStatus.PENDING:
            try:
                await self.process_notification(initial.id, now)
            except Exception as e:
                # Still PENDING; the next notification sweep sends it
                await self.db.rollback()
                logger.exception("initial_notification_error", payment_id=str(payment_id), exc_info=e)

        return await self.get_workflow(payment_id)

    async def get_workflow(self, failed_payment_id: UUID) -> DunningWorkflow:
        notifications = await self.store.list_for_payment(failed_payment_id)
        return DunningWorkflow(failed_payment_id=failed_payment_id, notifications=notifications)

    async def run_due_notifications(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Send every PENDING notification whose scheduled date has passed.

        Returns:
            Dict with counts of sent, failed, deferred, skipped and errored notifications

        Raises:
            StoreUnavailable: If the due list cannot be read
        """
        now = now or datetime.utcnow()
        due_ids = await self.store.list_due_ids(now)

        logger.info("dunning_sweep_started", due_count=len(due_ids))

        counters = {"sent": 0, "failed": 0, "deferred": 0, "skipped": 0, "errors": 0}
        for notification_id in due_ids:
            try:
                status = await self.process_notification(notification_id, now)
                counters[status] += 1
            except Exception as e:
                await self.db.rollback()
                counters["errors"] += 1
                logger.exception(
                    "dunning_notification_error",
                    notification_id=str(notification_id),
                    exc_info=e,
                )

        logger.info("dunning_sweep_completed", **counters)
        return counters

    async def process_notification(self, notification_id: UUID, now: datetime) -> str:
        """
        Claim, render and send one notification.

        Returns:
            Name of the sweep counter this notification falls under
        """
        notification = await self.store.get(notification_id)
        if notification is None or notification.status != NotificationStatus.PENDING:
            return "skipped"

        if not await self.store.claim(notification):
            await self.db.rollback()
            return "skipped"
        await self.db.commit()

        try:
            return await self._deliver(notification, now)
        except Exception:
            await self.db.rollback()
            claimed = await self.store.get(notification_id)
            if claimed is not None:
                await self.store.release(claimed)
                await self.db.commit()
            raise

    async def _deliver(self, notification: DunningNotification, now: datetime) -> str:
        stage = notification.stage
        log = logger.bind(
            notification_id=str(notification.id),
            payment_id=str(notification.failed_payment_id),
            stage=stage.value,
        )

        if stage == DunningStage.SUBSCRIPTION_CANCELED and not await self._cancellation_processed(notification):
            await self.store.release(notification)
            await self.db.commit()
            log.info("dunning_notification_deferred", reason="cancellation not processed yet")
            dunning_notifications_total.labels(stage=stage.value, status="deferred").inc()
            return "deferred"

        payment = await self.payments.get(notification.failed_payment_id)
        member = await self.members.get(notification.payer_id)

        if payment is None or member is None or not member.email:
            await self.store.mark_failed(notification, "Payer or payment could not be resolved")
            await self.db.commit()
            log.warning("dunning_notification_unresolved", payment_found=payment is not None, member_found=member is not None)
            dunning_notifications_total.labels(stage=stage.value, status="failed").inc()
            return "failed"

        content = build_email(stage, member, payment)
        result = await self._send(member.email, content.subject, content.html_body, content.text_body)

        if not result.success:
            await self.store.mark_failed(notification, result.error or "Notification delivery failed")
            await self.db.commit()
            log.warning("dunning_notification_failed", error=result.error)
            dunning_notifications_total.labels(stage=stage.value, status="failed").inc()
            return "failed"

        notification_id = notification.id
        if stage == DunningStage.FINAL_NOTICE:
            # Cancellation and SENT commit together; a failed hand-off leaves the notice due again
            try:
                await self._hand_off_cancellation(payment, member, now)
                await self.store.mark_sent(notification, now)
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                log.info("cancellation_already_scheduled")
                notification = await self.store.get(notification_id)
                await self.store.mark_sent(notification, now)
                await self.db.commit()
        else:
            await self.store.mark_sent(notification, now)
            await self.db.commit()

        log.info("dunning_notification_sent", message_id=result.message_id)
        dunning_notifications_total.labels(stage=stage.value, status="sent").inc()
        return "sent"

    async def _send(self, to: str, subject: str, html_body: str, text_body: str) -> NotificationResult:
        try:
            return await asyncio.wait_for(
                self.notifier.send(to, subject, html_body, text_body),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return NotificationResult(success=False, error=f"Notification timed out after {self.timeout_seconds}s")
        except NotifierFailure as e:
            return NotificationResult(success=False, error=str(e))

    async def _hand_off_cancellation(self, payment: FailedPayment, member: Member, now: datetime) -> None:
        """
        Schedule the subscription cancellation for a final notice that went out.

        Only flushes; the caller commits it with the notification's SENT status.

        Raises:
            IntegrityError: If a concurrent worker scheduled the same subscription first
        """
        subscription_ref = payment.subscription_ref or member.stripe_subscription_id

        if not subscription_ref:
            logger.warning("cancellation_not_scheduled", payment_id=str(payment.id), reason="no subscription")
            return

        await self.cancellations.schedule_cancellation(member.id, subscription_ref, payment.id, now)

    async def _cancellation_processed(self, notification: DunningNotification) -> bool:
        pending = await self.pending_cancellations.list_for_payment(notification.failed_payment_id)
        return any(p.processed for p in pending)
