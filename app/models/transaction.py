"""SQLAlchemy models for the payment gateway."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    """
    The booking being paid for.

    Owned by the booking lifecycle; this service only reads it and flips its
    payment/booking status when a transaction is confirmed or reverted.
    """

    __tablename__ = "orders"

    id = Column(String(100), primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)
    total_amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="VND")
    payment_status = Column(String(20), nullable=False, default="UNPAID")
    booking_status = Column(String(20), nullable=False, default="PENDING")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Transaction(Base):
    """
    One payment attempt against one provider.

    Only the orchestrator writes to this table. provider_ref is the reference
    shared with the gateway; id never leaves the service. Once a row reaches
    PAID, FAILED or REFUNDED its outcome fields are frozen.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        # At most one PAID attempt per order
        Index(
            "uq_transactions_order_paid",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'PAID'"),
            postgresql_where=text("status = 'PAID'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(100), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    provider_ref = Column(String(100), nullable=False, unique=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(30), nullable=False, default="CREATED")

    redirect_url = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    provider_transaction_id = Column(String(100), nullable=True)
    raw_provider_payload = Column(Text, nullable=True)  # JSON evidence for disputes
    created_by = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)


class PaymentEvent(Base):
    """
    Immutable audit trail entry.

    Every state change, rejected callback and anomaly gets a row. Rows are
    append-only and survive deletion of the transaction they describe.
    """

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(36), nullable=True, index=True)
    order_id = Column(String(100), nullable=True, index=True)
    provider = Column(String(20), nullable=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)
