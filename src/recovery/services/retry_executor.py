"""Execution of due payment retries against the payment gateway."""
import asyncio
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.adapters.payment_gateway import GatewayOutcome, GatewayResult, PaymentGateway
from recovery.config import settings
from recovery.exceptions import GatewayDecline, NotRetryable, TransientGatewayFault
from recovery.metrics import payment_retries_total, recovered_amount_total
from recovery.models.failed_payment import FailedPayment, RetryAttempt, RetryStatus
from recovery.services.retry_scheduler import RetryScheduler
from recovery.stores.failed_payment_store import FailedPaymentStore

logger = structlog.get_logger(__name__)


class ExecutionOutcome(enum.Enum):
    """Result of one retry execution."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED_NOT_DUE = "skipped_not_due"
    SKIPPED_EXHAUSTED = "skipped_exhausted"
    SKIPPED_CLAIMED = "skipped_claimed"  # Another worker holds or won the attempt
    DEFERRED_TRANSIENT = "deferred_transient"  # Gateway fault; attempt left SCHEDULED


@dataclass
class ManualRetryResult:
    """What an admin gets back from a manual retry."""

    payment_id: UUID
    attempt_id: UUID
    attempt_number: int
    outcome: ExecutionOutcome
    attempt_status: RetryStatus
    message: Optional[str] = None
    transaction_ref: Optional[str] = None


class RetryExecutor:
    """
    Runs one retry attempt through claim, gateway call and result recording.

    The claim (SCHEDULED -> PROCESSING) is committed before the gateway is
    called, so overlapping sweeps and manual retries can never charge the
    same attempt twice. Commits happen here because the claim must be visible
    to other workers while the gateway call is in flight.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        scheduler: Optional[RetryScheduler] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.scheduler = scheduler or RetryScheduler()
        self.store = FailedPaymentStore(db)
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds

    async def execute_due_retry(self, payment: FailedPayment, now: Optional[datetime] = None) -> ExecutionOutcome:
        """
        Execute the payment's next automatic retry if it is due.

        Args:
            payment: Failed payment with its attempts loaded
            now: Reference time (defaults to utcnow)

        Returns:
            Outcome of the execution
        """
        now = now or datetime.utcnow()
        attempt = self.scheduler.next_attempt(payment)

        if attempt is None:
            latest = payment.latest_attempt
            if latest is not None and latest.status == RetryStatus.PROCESSING:
                return ExecutionOutcome.SKIPPED_CLAIMED
            await self._sync_next_retry_at(payment, None)
            return ExecutionOutcome.SKIPPED_EXHAUSTED

        if attempt.scheduled_date > now:
            await self._sync_next_retry_at(payment, attempt.scheduled_date)
            return ExecutionOutcome.SKIPPED_NOT_DUE

        return await self._run(payment, attempt, now)

    async def execute_manual_retry(self, payment: FailedPayment, now: Optional[datetime] = None) -> ManualRetryResult:
        """
        Retry a failed payment immediately, outside the backoff schedule.

        Goes through the same claim as the sweeps. The attempt is recorded as
        manual and does not count against the automatic retry budget, unless
        an automatic attempt is already waiting, in which case that one is used.
        A payment gets one manual attempt, so its history never holds more than
        max_retries + 1 attempts.

        Raises:
            NotRetryable: If the payment is not FAILED, its manual attempt is used
                up, or another worker holds the retry
        """
        now = now or datetime.utcnow()
        payment_id = payment.id

        if payment.status != RetryStatus.FAILED:
            raise NotRetryable(f"Payment {payment_id} is {payment.status.value}, not failed")

        latest = payment.latest_attempt
        if latest is not None and latest.status == RetryStatus.SCHEDULED:
            attempt = latest
        elif any(a.is_manual for a in payment.retry_attempts):
            raise NotRetryable(f"Payment {payment_id} has already been retried manually")
        else:
            attempt = RetryAttempt(
                attempt_number=len(payment.retry_attempts) + 1,
                scheduled_date=now,
                status=RetryStatus.SCHEDULED,
                is_manual=True,
            )

        outcome = await self._run(payment, attempt, now)
        if outcome == ExecutionOutcome.SKIPPED_CLAIMED:
            raise NotRetryable(f"Payment {payment_id} is already being retried")

        return ManualRetryResult(
            payment_id=payment_id,
            attempt_id=attempt.id,
            attempt_number=attempt.attempt_number,
            outcome=outcome,
            attempt_status=attempt.status,
            message=attempt.result_message,
            transaction_ref=attempt.transaction_ref,
        )

    async def _run(self, payment: FailedPayment, attempt: RetryAttempt, now: datetime) -> ExecutionOutcome:
        # Read before the claim; a lost claim rolls back and expires the instances
        payment_id = payment.id
        attempt_number = attempt.attempt_number
        manual = "true" if attempt.is_manual else "false"

        if not await self._claim(payment, attempt):
            logger.info(
                "retry_attempt_claim_lost",
                payment_id=str(payment_id),
                attempt_number=attempt_number,
            )
            payment_retries_total.labels(outcome=ExecutionOutcome.SKIPPED_CLAIMED.value, manual=manual).inc()
            return ExecutionOutcome.SKIPPED_CLAIMED

        idempotency_key = f"{payment.id}:{attempt.id}"
        logger.info(
            "retry_attempt_claimed",
            payment_id=str(payment.id),
            attempt_id=str(attempt.id),
            attempt_number=attempt.attempt_number,
            manual=attempt.is_manual,
        )

        try:
            result = await asyncio.wait_for(
                self._call_gateway(payment, idempotency_key),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            result = GatewayResult.transient(f"Gateway call timed out after {self.timeout_seconds}s")
        except TransientGatewayFault as e:
            result = GatewayResult.transient(str(e))
        except GatewayDecline as e:
            result = GatewayResult.declined(str(e), decline_code=e.code)
        except Exception:
            await self.store.release_attempt(attempt, "Retry aborted by an unexpected error")
            await self.db.commit()
            raise

        outcome = await self._record(payment, attempt, result, now)
        payment_retries_total.labels(outcome=outcome.value, manual=manual).inc()
        return outcome

    async def _claim(self, payment: FailedPayment, attempt: RetryAttempt) -> bool:
        """Persist the attempt if new, then CAS it to PROCESSING and commit."""
        try:
            if attempt.id is None:
                await self.store.append_attempt(payment, attempt)
            claimed = await self.store.claim_attempt(attempt)
        except IntegrityError:
            # A concurrent worker inserted the same attempt number first
            await self.db.rollback()
            return False

        if not claimed:
            await self.db.rollback()
            return False

        await self.db.commit()
        return True

    async def _call_gateway(self, payment: FailedPayment, idempotency_key: str) -> GatewayResult:
        if payment.invoice_ref:
            return await self.gateway.retry_invoice(payment.invoice_ref, idempotency_key=idempotency_key)
        return await self.gateway.create_and_confirm_charge(
            amount=payment.amount,
            currency=payment.currency,
            payment_method_ref=payment.payment_method_ref,
            customer_ref=payment.customer_ref,
            idempotency_key=idempotency_key,
        )

    async def _record(
        self,
        payment: FailedPayment,
        attempt: RetryAttempt,
        result: GatewayResult,
        now: datetime,
    ) -> ExecutionOutcome:
        log = logger.bind(
            payment_id=str(payment.id),
            attempt_id=str(attempt.id),
            attempt_number=attempt.attempt_number,
        )

        if result.outcome == GatewayOutcome.TRANSIENT_ERROR:
            await self.store.release_attempt(attempt, result.message)
            outcome = ExecutionOutcome.DEFERRED_TRANSIENT
            log.warning("payment_retry_deferred", reason=result.message)
        elif result.outcome == GatewayOutcome.SUCCEEDED:
            await self.store.complete_attempt(
                attempt,
                RetryStatus.SUCCEEDED,
                executed_date=now,
                result_message=result.message,
                transaction_ref=result.transaction_ref,
            )
            outcome = ExecutionOutcome.SUCCEEDED
            recovered_amount_total.labels(currency=payment.currency.upper()).inc(payment.amount)
            log.info("payment_retry_succeeded", transaction_ref=result.transaction_ref)
        else:
            await self.store.complete_attempt(
                attempt,
                RetryStatus.FAILED,
                executed_date=now,
                result_message=result.message,
            )
            outcome = ExecutionOutcome.FAILED
            log.warning("payment_retry_failed", reason=result.message, decline_code=result.decline_code)

        await self.store.set_next_retry_at(payment, self.scheduler.next_retry_date(payment))
        await self.db.commit()
        return outcome

    async def _sync_next_retry_at(self, payment: FailedPayment, value: Optional[datetime]) -> None:
        if payment.next_retry_at != value:
            await self.store.set_next_retry_at(payment, value)
            await self.db.commit()
