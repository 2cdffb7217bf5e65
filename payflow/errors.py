"""
Error taxonomy for the checkout/payment core.

Every error carries the HTTP status the API layer answers with and whether
the job queue may retry a job that raised it.
"""


class PaymentCoreError(Exception):
    status_code = 500
    retryable = True

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentCoreError):
    """Malformed id, amount or payload. Raised before any store access."""
    status_code = 400
    retryable = False


class NotFoundError(PaymentCoreError):
    status_code = 404
    retryable = False


class DuplicatePaymentError(PaymentCoreError):
    status_code = 409
    retryable = False


class InsufficientStockError(PaymentCoreError):
    status_code = 400
    retryable = False


class InvalidStateError(PaymentCoreError):
    """An illegal payment status transition was attempted."""
    status_code = 409
    retryable = False


class InternalProcessingError(PaymentCoreError):
    status_code = 500


class PaymentDeclinedError(PaymentCoreError):
    # Retryable: the queue gets another go at the gateway
    status_code = 402
