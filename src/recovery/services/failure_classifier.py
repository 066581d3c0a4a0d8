"""Classification of processor decline reasons."""
import structlog

from recovery.exceptions import ClassificationUnknown
from recovery.models.failed_payment import FailureKind

logger = structlog.get_logger(__name__)

# Processor reason codes -> failure kind
REASON_TO_KIND = {
    "insufficient_funds": FailureKind.INSUFFICIENT_FUNDS,
    "card_declined": FailureKind.CARD_DECLINED,
    "generic_decline": FailureKind.CARD_DECLINED,
    "do_not_honor": FailureKind.CARD_DECLINED,
    "expired_card": FailureKind.EXPIRED_CARD,
    "invalid_cvc": FailureKind.INVALID_CVC,
    "incorrect_cvc": FailureKind.INVALID_CVC,
    "processing_error": FailureKind.PROCESSING_ERROR,
}

# Payer-facing description of each kind
FAILURE_REASONS = {
    FailureKind.INSUFFICIENT_FUNDS: "Insufficient funds in your account",
    FailureKind.CARD_DECLINED: "Your card was declined",
    FailureKind.EXPIRED_CARD: "Your card has expired",
    FailureKind.INVALID_CVC: "Invalid security code (CVC)",
    FailureKind.PROCESSING_ERROR: "A processing error occurred",
    FailureKind.UNKNOWN: "Payment processing issue",
}


class FailureClassifier:
    """Maps raw decline reasons onto the FailureKind taxonomy."""

    def classify(self, raw_reason: str | None) -> FailureKind:
        """
        Classify a processor decline reason.

        Unrecognized or empty reasons yield UNKNOWN so that recording a
        failure is never blocked by classification.

        Args:
            raw_reason: Decline code as reported by the processor

        Returns:
            Matching FailureKind
        """
        try:
            return self._lookup(raw_reason)
        except ClassificationUnknown:
            logger.info("failure_reason_unclassified", raw_reason=raw_reason)
            return FailureKind.UNKNOWN

    def _lookup(self, raw_reason: str | None) -> FailureKind:
        key = (raw_reason or "").strip().lower()
        if key == FailureKind.UNKNOWN.value:
            return FailureKind.UNKNOWN
        try:
            return REASON_TO_KIND[key]
        except KeyError:
            raise ClassificationUnknown(raw_reason) from None


def describe_failure(kind: FailureKind) -> str:
    """Human-readable reason for a failure kind."""
    return FAILURE_REASONS.get(kind, FAILURE_REASONS[FailureKind.UNKNOWN])
