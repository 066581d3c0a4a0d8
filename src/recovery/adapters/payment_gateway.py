"""Payment gateway capability consumed by the recovery engine."""
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass


class GatewayOutcome(enum.Enum):
    """Tri-state result of a gateway call."""

    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    TRANSIENT_ERROR = "transient_error"


@dataclass(frozen=True)
class GatewayResult:
    """Normalized response from any gateway operation."""

    outcome: GatewayOutcome
    message: str = ""
    transaction_ref: str | None = None
    decline_code: str | None = None

    @classmethod
    def succeeded(cls, transaction_ref: str | None = None, message: str = "Payment retry succeeded") -> "GatewayResult":
        return cls(GatewayOutcome.SUCCEEDED, message=message, transaction_ref=transaction_ref)

    @classmethod
    def declined(cls, message: str, decline_code: str | None = None) -> "GatewayResult":
        return cls(GatewayOutcome.DECLINED, message=message, decline_code=decline_code)

    @classmethod
    def transient(cls, message: str) -> "GatewayResult":
        return cls(GatewayOutcome.TRANSIENT_ERROR, message=message)

    @property
    def ok(self) -> bool:
        return self.outcome == GatewayOutcome.SUCCEEDED


class PaymentGateway(ABC):
    """
    Payment processor operations needed for recovery.

    Implementations must report business declines and infrastructure faults
    separately, and must honour idempotency keys so a call repeated after a
    timeout never produces a second charge.
    """

    @abstractmethod
    async def retry_invoice(self, invoice_ref: str, idempotency_key: str) -> GatewayResult:
        """Pay an open subscription invoice again."""

    @abstractmethod
    async def create_and_confirm_charge(
        self,
        amount: int,
        currency: str,
        payment_method_ref: str | None,
        customer_ref: str | None,
        idempotency_key: str,
    ) -> GatewayResult:
        """Create and confirm a fresh charge against a stored payment method."""

    @abstractmethod
    async def cancel_subscription(
        self,
        subscription_ref: str,
        reason: str,
        idempotency_key: str | None = None,
    ) -> GatewayResult:
        """Cancel a subscription at the processor."""
