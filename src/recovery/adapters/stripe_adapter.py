"""Stripe payment gateway adapter."""
import asyncio
from typing import Any, Callable

import stripe
import structlog

from recovery.adapters.payment_gateway import GatewayResult, PaymentGateway
from recovery.config import settings
from recovery.exceptions import TransientGatewayFault

logger = structlog.get_logger(__name__)

# Invoice states Stripe accepts a pay call for
PAYABLE_INVOICE_STATUSES = ("open", "uncollectible")


class StripeAdapter(PaymentGateway):
    """Adapter for Stripe payment gateway integration."""

    def __init__(self, timeout_seconds: float | None = None):
        """Initialize Stripe adapter with API key."""
        stripe.api_key = settings.stripe_secret_key
        # Retries are driven by the recovery sweeps, not by the client library
        stripe.max_network_retries = 0
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a blocking Stripe call in a worker thread under the gateway timeout.

        Raises:
            TransientGatewayFault: On timeout, connection failure, rate limiting or 5xx
            stripe.StripeError: For every other Stripe error
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransientGatewayFault(f"Gateway call timed out after {self.timeout_seconds}s") from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            raise TransientGatewayFault(str(e)) from e
        except stripe.StripeError as e:
            if e.http_status is not None and e.http_status >= 500:
                raise TransientGatewayFault(str(e)) from e
            raise

    async def retry_invoice(self, invoice_ref: str, idempotency_key: str) -> GatewayResult:
        """
        Pay an open invoice again.

        Args:
            invoice_ref: Stripe invoice ID
            idempotency_key: Idempotency key for the pay call

        Returns:
            Gateway result; succeeded only when Stripe reports the invoice paid
        """
        try:
            invoice = await self._call(stripe.Invoice.retrieve, invoice_ref)

            if invoice.status == "paid":
                return GatewayResult.succeeded(
                    transaction_ref=_payment_intent_id(invoice),
                    message="Invoice already paid",
                )
            if invoice.status not in PAYABLE_INVOICE_STATUSES:
                return GatewayResult.declined(f"Invoice status {invoice.status} cannot be retried")

            paid = await self._call(stripe.Invoice.pay, invoice_ref, idempotency_key=idempotency_key)

            if paid.status == "paid":
                return GatewayResult.succeeded(transaction_ref=_payment_intent_id(paid))
            return GatewayResult.declined(f"Payment retry failed: {paid.status}")

        except TransientGatewayFault as e:
            logger.warning("stripe_invoice_retry_transient", invoice_ref=invoice_ref, error=str(e))
            return GatewayResult.transient(str(e))
        except stripe.CardError as e:
            return GatewayResult.declined(e.user_message or str(e), decline_code=_decline_code(e))
        except stripe.StripeError as e:
            return GatewayResult.declined(str(e), decline_code=getattr(e, "code", None))

    async def create_and_confirm_charge(
        self,
        amount: int,
        currency: str,
        payment_method_ref: str | None,
        customer_ref: str | None,
        idempotency_key: str,
    ) -> GatewayResult:
        """
        Create and confirm an off-session payment intent.

        Args:
            amount: Amount in minor units
            currency: ISO currency code
            payment_method_ref: Stripe payment method ID (customer default if None)
            customer_ref: Stripe customer ID
            idempotency_key: Idempotency key for the create call

        Returns:
            Gateway result
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "confirm": True,
            "off_session": True,
            "idempotency_key": idempotency_key,
            "metadata": {"recovery_idempotency_key": idempotency_key},
        }
        if customer_ref:
            params["customer"] = customer_ref
        if payment_method_ref:
            params["payment_method"] = payment_method_ref

        try:
            payment_intent = await self._call(stripe.PaymentIntent.create, **params)
        except TransientGatewayFault as e:
            logger.warning("stripe_charge_transient", customer_ref=customer_ref, error=str(e))
            return GatewayResult.transient(str(e))
        except stripe.CardError as e:
            # Includes authentication_required for off-session charges
            return GatewayResult.declined(e.user_message or str(e), decline_code=_decline_code(e))
        except stripe.StripeError as e:
            return GatewayResult.declined(str(e), decline_code=getattr(e, "code", None))

        if payment_intent.status == "succeeded":
            return GatewayResult.succeeded(transaction_ref=payment_intent.id)
        if payment_intent.status == "processing":
            # Outcome not known yet; replaying the same key later returns the settled intent
            return GatewayResult.transient(f"Payment intent {payment_intent.id} still processing")
        if payment_intent.status == "requires_action":
            return GatewayResult.declined("Authentication required", decline_code="authentication_required")
        return GatewayResult.declined(f"Payment retry failed: {payment_intent.status}")

    async def cancel_subscription(
        self,
        subscription_ref: str,
        reason: str,
        idempotency_key: str | None = None,
    ) -> GatewayResult:
        """
        Cancel a subscription immediately.

        Args:
            subscription_ref: Stripe subscription ID
            reason: Cancellation comment stored on the subscription
            idempotency_key: Optional idempotency key

        Returns:
            Gateway result
        """
        params: dict[str, Any] = {"cancellation_details": {"comment": reason}}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            subscription = await self._call(stripe.Subscription.cancel, subscription_ref, **params)
        except TransientGatewayFault as e:
            logger.warning("stripe_cancel_transient", subscription_ref=subscription_ref, error=str(e))
            return GatewayResult.transient(str(e))
        except stripe.StripeError as e:
            return GatewayResult.declined(str(e), decline_code=getattr(e, "code", None))

        return GatewayResult.succeeded(transaction_ref=subscription.id, message=f"Subscription {subscription.status}")

    async def construct_webhook_event(self, payload: bytes, signature: str) -> Any:
        """
        Construct and verify webhook event.

        Args:
            payload: Webhook payload
            signature: Webhook signature

        Returns:
            Stripe event object

        Raises:
            ValueError: If signature verification fails
        """
        try:
            event = stripe.Webhook.construct_event(
                payload, signature, settings.stripe_webhook_secret
            )
            return event
        except ValueError as e:
            raise ValueError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid signature: {e}") from e


def _payment_intent_id(invoice: Any) -> str | None:
    payment_intent = invoice.get("payment_intent")
    if isinstance(payment_intent, str) or payment_intent is None:
        return payment_intent
    return payment_intent.get("id")


def _decline_code(error: stripe.CardError) -> str | None:
    return getattr(error, "code", None) or (error.json_body or {}).get("error", {}).get("decline_code")
