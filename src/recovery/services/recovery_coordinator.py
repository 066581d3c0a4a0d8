"""Entry point of the payment failure recovery engine."""
import time
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.adapters.payment_gateway import PaymentGateway
from recovery.config import settings
from recovery.exceptions import RecordNotFound
from recovery.integrations.notification_service import Notifier
from recovery.metrics import payment_failures_recorded_total, sweep_errors_total, sweep_last_run_timestamp
from recovery.models.failed_payment import FailedPayment
from recovery.models.member import Member, MembershipStatus
from recovery.schemas.failure_event import FailureEvent
from recovery.services.cancellation_service import CancellationScheduler
from recovery.services.dunning_service import DunningWorkflowEngine
from recovery.services.failure_classifier import FailureClassifier
from recovery.services.retry_executor import ExecutionOutcome, ManualRetryResult, RetryExecutor
from recovery.services.retry_scheduler import RetryScheduler
from recovery.stores.failed_payment_store import FailedPaymentStore
from recovery.stores.member_store import MemberStore

logger = structlog.get_logger(__name__)


class RecoveryCoordinator:
    """
    Facade over classification, retries, dunning and cancellation.

    Webhooks call record_failure, the scheduled jobs call the three run_due_*
    sweeps, and the admin API calls manual_retry. Every sweep is idempotent
    and safe to run concurrently with itself.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        notifier: Notifier,
        scheduler: Optional[RetryScheduler] = None,
    ):
        """Initialize coordinator and its components on one database session."""
        self.db = db
        self.classifier = FailureClassifier()
        self.scheduler = scheduler or RetryScheduler()
        self.payments = FailedPaymentStore(db)
        self.members = MemberStore(db)
        self.executor = RetryExecutor(db, gateway, self.scheduler)
        self.cancellations = CancellationScheduler(db, gateway)
        self.dunning = DunningWorkflowEngine(db, notifier, self.cancellations)

    async def record_failure(self, event: FailureEvent, now: Optional[datetime] = None) -> FailedPayment:
        """
        Record a declined payment and start its recovery.

        Classifies the decline, stores the failed payment with its first
        retry due per the backoff table, then starts the dunning workflow,
        which sends the initial email before this returns. Redelivery of the
        same processor event returns the existing record.

        Args:
            event: Processor-reported failure
            now: Reference time (defaults to utcnow)

        Returns:
            The failed payment

        Raises:
            RecordNotFound: If the payer cannot be resolved
        """
        now = now or datetime.utcnow()

        existing = await self.payments.get_by_source_ref(event.source_ref)
        if existing is not None:
            logger.info("payment_failure_duplicate", source_ref=event.source_ref, payment_id=str(existing.id))
            return existing

        member = await self._resolve_payer(event)
        kind = self.classifier.classify(event.raw_reason)
        failed_at = event.occurred_at or now

        try:
            payment = await self.payments.create(
                payer_id=member.id,
                source_ref=event.source_ref,
                amount=event.amount,
                currency=event.currency.upper(),
                failure_kind=kind,
                failure_message=event.failure_message or f"Payment failed: {event.raw_reason or 'unknown'}",
                failed_at=failed_at,
                payment_method_ref=event.payment_method_ref,
                customer_ref=event.customer_ref or member.stripe_customer_id,
                subscription_ref=event.subscription_ref,
                invoice_ref=event.invoice_ref,
                max_retries=settings.retry_max_attempts,
                next_retry_at=failed_at + self.scheduler.offset(1),
            )
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            await self.db.rollback()
            existing = await self.payments.get_by_source_ref(event.source_ref)
            if existing is None:
                raise
            return existing

        if member.subscription_status == MembershipStatus.ACTIVE:
            await self.members.set_subscription_status(member, MembershipStatus.PAST_DUE)

        payment_failures_recorded_total.labels(failure_kind=kind.value, currency=payment.currency).inc()
        logger.info(
            "payment_failure_recorded",
            payment_id=str(payment.id),
            payer_id=str(member.id),
            failure_kind=kind.value,
            amount=payment.amount,
            currency=payment.currency,
        )

        await self.dunning.start_workflow(payment, now)
        return payment

    async def run_due_retries(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Execute every retry that is due.

        Each payment is processed in isolation: an error is logged, rolled
        back and counted, and the sweep moves on.

        Returns:
            Dict with counts of attempted, succeeded, failed, deferred, skipped and errored retries

        Raises:
            StoreUnavailable: If the due list cannot be read
        """
        now = now or datetime.utcnow()
        due_ids = await self.payments.list_due_ids(now)

        logger.info("payment_retry_started", payments_count=len(due_ids))

        counters = {"attempted": 0, "succeeded": 0, "failed": 0, "deferred": 0, "skipped": 0, "errors": 0}
        for payment_id in due_ids:
            try:
                payment = await self.payments.get(payment_id)
                if payment is None:
                    counters["skipped"] += 1
                    continue

                payer_id = payment.payer_id
                outcome = await self.executor.execute_due_retry(payment, now)

                if outcome == ExecutionOutcome.SUCCEEDED:
                    counters["attempted"] += 1
                    counters["succeeded"] += 1
                    await self._restore_membership(payer_id)
                elif outcome == ExecutionOutcome.FAILED:
                    counters["attempted"] += 1
                    counters["failed"] += 1
                elif outcome == ExecutionOutcome.DEFERRED_TRANSIENT:
                    counters["attempted"] += 1
                    counters["deferred"] += 1
                else:
                    counters["skipped"] += 1

            except Exception as e:
                await self.db.rollback()
                counters["errors"] += 1
                sweep_errors_total.labels(sweep="retries").inc()
                logger.exception("payment_retry_error", payment_id=str(payment_id), exc_info=e)

        sweep_last_run_timestamp.labels(sweep="retries").set(time.time())
        logger.info("payment_retry_completed", **counters)
        return counters

    async def run_due_notifications(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Send due dunning notifications."""
        counters = await self.dunning.run_due_notifications(now)
        if counters["errors"]:
            sweep_errors_total.labels(sweep="notifications").inc(counters["errors"])
        sweep_last_run_timestamp.labels(sweep="notifications").set(time.time())
        return counters

    async def run_due_cancellations(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Execute cancellations whose grace period has ended."""
        counters = await self.cancellations.run_due_cancellations(now)
        if counters["errors"]:
            sweep_errors_total.labels(sweep="cancellations").inc(counters["errors"])
        sweep_last_run_timestamp.labels(sweep="cancellations").set(time.time())
        return counters

    async def manual_retry(self, payment_id: UUID, now: Optional[datetime] = None) -> ManualRetryResult:
        """
        Retry a failed payment now, on an admin's request.

        Raises:
            RecordNotFound: If the payment does not exist
            NotRetryable: If the payment is not in a failed state
        """
        payment = await self.payments.get(payment_id)
        if payment is None:
            raise RecordNotFound(f"Failed payment {payment_id} not found")

        payer_id = payment.payer_id
        result = await self.executor.execute_manual_retry(payment, now)
        if result.outcome == ExecutionOutcome.SUCCEEDED:
            await self._restore_membership(payer_id)
        logger.info(
            "manual_retry_completed",
            payment_id=str(payment_id),
            attempt_number=result.attempt_number,
            outcome=result.outcome.value,
        )
        return result

    async def handle_subscription_deleted(self, subscription_ref: str, customer_ref: Optional[str] = None) -> bool:
        """
        Mirror a processor-side subscription cancellation onto the member.

        Returns:
            True if a member was found
        """
        member = await self.members.get_by_subscription_ref(subscription_ref)
        if member is None and customer_ref:
            member = await self.members.get_by_customer_ref(customer_ref)
        if member is None:
            logger.warning("subscription_deleted_member_missing", subscription_ref=subscription_ref)
            return False

        if member.subscription_status != MembershipStatus.CANCELED:
            await self.members.set_subscription_status(member, MembershipStatus.CANCELED)
            await self.db.commit()
            logger.info("member_subscription_canceled", member_id=str(member.id), subscription_ref=subscription_ref)
        return True

    async def _resolve_payer(self, event: FailureEvent) -> Member:
        member = None
        if event.payer_id is not None:
            member = await self.members.get(event.payer_id)
        elif event.customer_ref:
            member = await self.members.get_by_customer_ref(event.customer_ref)

        if member is None:
            raise RecordNotFound(
                f"No member for payer_id={event.payer_id} customer_ref={event.customer_ref}"
            )
        return member

    async def _restore_membership(self, payer_id: UUID) -> None:
        """Move a past-due member back to active once nothing is left unpaid."""
        member = await self.members.get(payer_id)
        if member is None or member.subscription_status != MembershipStatus.PAST_DUE:
            return
        if await self.payments.has_unrecovered(payer_id):
            return

        await self.members.set_subscription_status(member, MembershipStatus.ACTIVE)
        await self.db.commit()
        logger.info("member_subscription_restored", member_id=str(payer_id))
