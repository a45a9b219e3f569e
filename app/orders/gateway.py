"""
Narrow interface to the booking lifecycle.

The orchestrator reads an order to check ownership and existence, and tells
the booking side when a payment is confirmed or reverted. Nothing else in the
payment subsystem touches orders. Calls take the orchestrator's session so the
order update commits atomically with the transaction change.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import BookingStatus, OrderPaymentStatus
from app.models.transaction import Order


@dataclass(frozen=True)
class OrderInfo:
    id: str
    user_id: str
    total_amount: Decimal
    currency: str
    payment_status: str
    booking_status: str


class OrderGateway(ABC):
    @abstractmethod
    async def get_order(self, session: AsyncSession, order_id: str) -> Optional[OrderInfo]:
        ...

    @abstractmethod
    async def mark_paid(self, session: AsyncSession, order_id: str) -> None:
        """Payment confirmed: the booking becomes CONFIRMED."""
        ...

    @abstractmethod
    async def mark_unpaid(self, session: AsyncSession, order_id: str) -> None:
        """Payment failed or refunded: the booking goes back to PENDING."""
        ...


class SqlOrderGateway(OrderGateway):
    """Order gateway backed by the shared orders table."""

    async def _load(self, session: AsyncSession, order_id: str) -> Optional[Order]:
        result = await session.execute(select(Order).where(Order.id == order_id).with_for_update())
        return result.scalar_one_or_none()

    async def get_order(self, session: AsyncSession, order_id: str) -> Optional[OrderInfo]:
        order = await self._load(session, order_id)
        if order is None:
            return None
        return OrderInfo(
            id=order.id,
            user_id=order.user_id,
            total_amount=order.total_amount,
            currency=order.currency,
            payment_status=order.payment_status,
            booking_status=order.booking_status,
        )

    async def mark_paid(self, session: AsyncSession, order_id: str) -> None:
        order = await self._load(session, order_id)
        if order is None:
            raise LookupError(f"Order disappeared while confirming payment: {order_id}")
        order.payment_status = OrderPaymentStatus.PAID.value
        order.booking_status = BookingStatus.CONFIRMED.value

    async def mark_unpaid(self, session: AsyncSession, order_id: str) -> None:
        order = await self._load(session, order_id)
        if order is None:
            raise LookupError(f"Order disappeared while reverting payment: {order_id}")
        order.payment_status = OrderPaymentStatus.UNPAID.value
        # A booking cancelled on the booking side stays cancelled
        if order.booking_status == BookingStatus.CONFIRMED.value:
            order.booking_status = BookingStatus.PENDING.value
