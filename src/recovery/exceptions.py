"""Error taxonomy of the recovery engine."""


class RecoveryError(Exception):
    """Base class for recovery engine errors."""


class ClassificationUnknown(RecoveryError):
    """A processor decline reason has no FailureKind mapping. Never fatal."""


class RecordNotFound(RecoveryError):
    """A referenced failed payment, member or cancellation does not exist."""


class NotRetryable(RecoveryError):
    """Manual retry requested for a payment that is not in a failed state."""


class TransientGatewayFault(RecoveryError):
    """Timeout, connection error, rate limit or 5xx from the payment gateway."""


class GatewayDecline(RecoveryError):
    """The payment gateway refused the operation for a business reason."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class NotifierFailure(RecoveryError):
    """The notification transport could not deliver a message."""


class StoreUnavailable(RecoveryError):
    """The backing store could not be read; the current sweep is aborted."""
