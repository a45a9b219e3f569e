from app.models.enums import (
    BookingStatus,
    OrderPaymentStatus,
    PaymentOutcome,
    Provider,
    TransactionStatus,
    VerificationFailure,
)
from app.models.transaction import Base, Order, PaymentEvent, Transaction

__all__ = [
    "Base",
    "Order",
    "Transaction",
    "PaymentEvent",
    "BookingStatus",
    "OrderPaymentStatus",
    "PaymentOutcome",
    "Provider",
    "TransactionStatus",
    "VerificationFailure",
]
