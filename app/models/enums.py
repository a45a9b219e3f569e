"""Enumerations for the payment gateway domain model."""

from enum import Enum


class Provider(str, Enum):
    """External gateways a payment can be routed through."""

    VNPAY = "VNPAY"
    MOMO = "MOMO"
    STRIPE = "STRIPE"
    MANUAL = "MANUAL"


class TransactionStatus(str, Enum):
    """Lifecycle states for a single payment attempt."""

    CREATED = "CREATED"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.PAID, TransactionStatus.FAILED, TransactionStatus.REFUNDED}
)


class OrderPaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class PaymentOutcome(str, Enum):
    """What a verified callback says happened to the payment."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PENDING = "PENDING"  # Ambiguous or in-progress code; keep waiting
    IGNORED = "IGNORED"  # Verified event that carries no payment outcome


class RejectionReason(str, Enum):
    """Categorized reasons a create request is refused before touching the store."""

    UNKNOWN_PROVIDER = "unknown_provider"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_CURRENCY = "invalid_currency"
    UNSUPPORTED_CURRENCY = "unsupported_currency"
    MISSING_RETURN_URL = "missing_return_url"


class ReceiptStatus(str, Enum):
    """What the orchestrator did with an inbound callback."""

    APPLIED = "applied"
    PENDING = "pending"
    DUPLICATE = "duplicate"
    ANOMALY = "anomaly"
    AMOUNT_MISMATCH = "amount_mismatch"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


class VerificationFailure(str, Enum):
    """Categorized reasons an inbound callback could not be trusted."""

    MALFORMED = "MALFORMED"
    UNSIGNED = "UNSIGNED"
    FORGED = "FORGED"
