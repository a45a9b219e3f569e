"""
Error taxonomy for payment orchestration.

Every error carries the HTTP status it maps to and a stable machine-readable
code. Gateway problems split into two families:
  - ProviderRejected: the gateway answered and said no (never retried).
  - ProviderUnavailable: timeout or network failure. The caller may retry
    with a new attempt; the service itself never retries a create.
"""

from typing import Optional

from app.models.enums import VerificationFailure


class PaymentError(Exception):
    """Base exception for everything the orchestrator surfaces."""

    status_code = 400
    code = "payment_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PaymentError):
    """Bad input. Never retried."""

    status_code = 422
    code = "validation_error"


class Forbidden(PaymentError):
    status_code = 403
    code = "forbidden"


class OrderNotFound(PaymentError):
    status_code = 404
    code = "order_not_found"


class TransactionNotFound(PaymentError):
    """Unknown transaction or provider reference. Logged as an anomaly."""

    status_code = 404
    code = "transaction_not_found"


class DuplicatePayment(PaymentError):
    """The order already has a PAID transaction."""

    status_code = 409
    code = "duplicate_payment"


class Conflict(PaymentError):
    """Concurrent or out-of-order operation on the same order/transaction."""

    status_code = 409
    code = "conflict"


class ProviderError(PaymentError):
    """Base exception for payment gateway errors."""

    status_code = 502
    code = "provider_error"

    def __init__(self, message: str, status_code: Optional[int] = None, retriable: bool = False):
        super().__init__(message, status_code=status_code)
        self.retriable = retriable


class ProviderRejected(ProviderError):
    """The gateway refused to create the payment (bad credentials, bad amount, ...)."""

    status_code = 402
    code = "provider_rejected"

    def __init__(self, message: str):
        super().__init__(message, retriable=False)


class ProviderUnavailable(ProviderError):
    """Timeout or network failure talking to the gateway. Retryable by the caller."""

    status_code = 503
    code = "provider_unavailable"

    def __init__(self, message: str):
        super().__init__(message, retriable=True)


class VerificationFailed(PaymentError):
    """
    An inbound callback could not be trusted.

    Never surfaced to the provider; the ingress always acknowledges and the
    failure goes to the security log instead.
    """

    code = "verification_failed"

    def __init__(self, failure: VerificationFailure, message: str):
        super().__init__(f"{failure.value}: {message}")
        self.failure = failure


# Name used by the public API for a gateway refusal
PaymentRejected = ProviderRejected
