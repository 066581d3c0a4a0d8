"""Stripe webhook handler feeding payment failures into the recovery engine."""
from datetime import datetime
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from recovery.adapters.stripe_adapter import StripeAdapter
from recovery.api.deps import get_coordinator, get_stripe_adapter
from recovery.exceptions import RecordNotFound
from recovery.schemas.failure_event import FailureEvent
from recovery.services.recovery_coordinator import RecoveryCoordinator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["Webhooks"])


@router.post("")
async def handle_stripe_webhook(
    request: Request,
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    coordinator: RecoveryCoordinator = Depends(get_coordinator),
) -> dict[str, str]:
    """
    Handle incoming Stripe webhook events.

    Verifies the webhook signature and processes:
    - invoice.payment_failed: Record the failure and start recovery
    - payment_intent.payment_failed: Same, for charges not tied to an invoice
    - customer.subscription.deleted: Mark the member's subscription canceled

    Raises:
        HTTPException: If the signature is missing or invalid
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.error("stripe_webhook_missing_signature")
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        event = await stripe_adapter.construct_webhook_event(body, signature)
    except ValueError as e:
        logger.error("stripe_webhook_verification_failed", error=str(e))
        raise HTTPException(status_code=400, detail=f"Webhook verification failed: {e}")

    event_type = event["type"]
    data = event["data"]["object"]
    occurred_at = _event_time(event)

    logger.info("stripe_webhook_received", event_type=event_type, event_id=event.get("id"), object_id=data.get("id"))

    try:
        if event_type == "invoice.payment_failed":
            await coordinator.record_failure(_invoice_failure(data, occurred_at))
        elif event_type == "payment_intent.payment_failed":
            if data.get("invoice"):
                # The invoice.payment_failed event for the same charge drives recovery
                return {"status": "ignored", "event_type": event_type}
            await coordinator.record_failure(_payment_intent_failure(data, occurred_at))
        elif event_type == "customer.subscription.deleted":
            await coordinator.handle_subscription_deleted(data["id"], customer_ref=_ref(data.get("customer")))
        else:
            logger.info("stripe_webhook_unhandled_event", event_type=event_type)
            return {"status": "ignored", "event_type": event_type}
    except RecordNotFound as e:
        # Not one of our members; acknowledge so Stripe stops redelivering
        logger.warning("stripe_webhook_payer_not_found", event_type=event_type, error=str(e))
        return {"status": "ignored", "event_type": event_type}
    except ValidationError as e:
        logger.warning("stripe_webhook_incomplete_payload", event_type=event_type, error=str(e))
        return {"status": "ignored", "event_type": event_type}

    return {"status": "success", "event_type": event_type}


def _invoice_failure(invoice: dict, occurred_at: Optional[datetime]) -> FailureEvent:
    error = invoice.get("last_payment_error") or {}
    return FailureEvent(
        source_ref=invoice["id"],
        customer_ref=_ref(invoice.get("customer")),
        amount=invoice.get("amount_due") or 0,
        currency=invoice.get("currency") or "usd",
        raw_reason=_decline_reason(error),
        failure_message=error.get("message"),
        payment_method_ref=_ref(error.get("payment_method")),
        subscription_ref=_ref(invoice.get("subscription")),
        invoice_ref=invoice["id"],
        occurred_at=occurred_at,
    )


def _payment_intent_failure(payment_intent: dict, occurred_at: Optional[datetime]) -> FailureEvent:
    error = payment_intent.get("last_payment_error") or {}
    return FailureEvent(
        source_ref=payment_intent["id"],
        customer_ref=_ref(payment_intent.get("customer")),
        amount=payment_intent.get("amount") or 0,
        currency=payment_intent.get("currency") or "usd",
        raw_reason=_decline_reason(error),
        failure_message=error.get("message"),
        payment_method_ref=_ref(error.get("payment_method")) or _ref(payment_intent.get("payment_method")),
        occurred_at=occurred_at,
    )


def _decline_reason(error: dict) -> Optional[str]:
    return error.get("decline_code") or error.get("code") or error.get("type")


def _ref(value: Any) -> Optional[str]:
    """Stripe sends either an ID or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _event_time(event: Any) -> Optional[datetime]:
    created = event.get("created")
    return datetime.utcfromtimestamp(created) if created else None
