"""
Concurrency tests.

Fire many operations at the same order at once and check that the
orchestrator never lets more than one of them win.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.engine.errors import Conflict, DuplicatePayment
from app.models.enums import ReceiptStatus, TransactionStatus
from app.models.transaction import Transaction
from helpers import CUSTOMER, STAFF, vnpay_callback

RETURN_URL = "https://shop.example.test/return"


@pytest.mark.asyncio
async def test_parallel_creates_yield_one_attempt(orchestrator, fake_provider, db_session):
    """20 simultaneous checkouts for O1: one reaches the gateway, the rest see it in flight."""
    fake_provider.gate = asyncio.Event()

    tasks = [
        asyncio.create_task(
            orchestrator.create_transaction("O1", "FAKEPAY", Decimal("250000"), "VND", CUSTOMER, RETURN_URL)
        )
        for _ in range(20)
    ]
    while sum(t.done() for t in tasks) < 19:
        await asyncio.sleep(0.005)
    fake_provider.gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert all(isinstance(e, Conflict) for e in failures)

    rows = (await db_session.execute(select(Transaction).where(Transaction.order_id == "O1"))).scalars().all()
    assert len(rows) == 1
    assert len({r.provider_ref for r in rows}) == 1


@pytest.mark.asyncio
async def test_parallel_manual_payments_pay_once(orchestrator, orders, db_session):
    results = await asyncio.gather(
        *[orchestrator.create_transaction("O2", "MANUAL", Decimal("1200000"), "VND", STAFF) for _ in range(10)],
        return_exceptions=True,
    )

    paid = [r for r in results if not isinstance(r, Exception)]
    assert len(paid) == 1
    assert all(isinstance(e, (Conflict, DuplicatePayment)) for e in results if isinstance(e, Exception))
    assert orders.paid_calls == ["O2"]

    statuses = (await db_session.execute(
        select(Transaction.status).where(Transaction.order_id == "O2")
    )).scalars().all()
    assert statuses.count(TransactionStatus.PAID.value) == 1


@pytest.mark.asyncio
async def test_parallel_duplicate_callbacks_confirm_once(orchestrator, orders):
    created = await orchestrator.create_transaction("O1", "VNPAY", Decimal("250000"), "VND", CUSTOMER, RETURN_URL)
    payload = vnpay_callback(created.transaction.provider_ref, Decimal("250000"))

    receipts = await asyncio.gather(*[orchestrator.apply_callback("VNPAY", payload) for _ in range(10)])

    statuses = [r.status for r in receipts]
    assert statuses.count(ReceiptStatus.APPLIED) == 1
    assert statuses.count(ReceiptStatus.DUPLICATE) == 9
    assert orders.paid_calls == ["O1"]


@pytest.mark.asyncio
async def test_different_orders_do_not_block_each_other(orchestrator, fake_provider):
    fake_provider.delay = 0.05

    results = await asyncio.gather(
        orchestrator.create_transaction("O1", "FAKEPAY", Decimal("250000"), "VND", CUSTOMER, RETURN_URL),
        orchestrator.create_transaction("O2", "FAKEPAY", Decimal("1200000"), "VND", CUSTOMER, RETURN_URL),
    )

    assert {r.transaction.order_id for r in results} == {"O1", "O2"}
    assert all(r.transaction.status == TransactionStatus.PENDING_CONFIRMATION.value for r in results)
