"""
Payment endpoints.

POST   /payments                  — Open a payment attempt for an order.
GET    /payments                  — List transactions with filters (staff).
GET    /payments/my               — Caller's own transactions.
GET    /payments/stats            — Counts per status and paid totals (staff).
GET    /payments/order/{order_id} — Transactions of one order.
GET    /payments/{id}             — Single transaction.
GET    /payments/{id}/trace       — Full audit trail for a transaction (staff).
PATCH  /payments/{id}             — Administrative status change (staff).
DELETE /payments/{id}             — Remove a non-paid transaction (staff).
"""

import json
import math
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_caller, get_orchestrator
from app.database import get_session
from app.engine.errors import Forbidden, OrderNotFound, TransactionNotFound
from app.engine.orchestrator import Caller, PaymentOrchestrator
from app.models.enums import TransactionStatus
from app.models.transaction import Order, PaymentEvent, Transaction

router = APIRouter(prefix="/payments", tags=["payments"])


class CreatePaymentBody(BaseModel):
    order_id: str
    provider: str
    amount: Decimal
    currency: str = "VND"
    return_url: str = ""
    cancel_url: Optional[str] = None
    description: str = ""


class PaymentCreated(BaseModel):
    transaction_id: str
    provider_ref: str
    redirect_url: Optional[str]
    status: str


class TransactionDetail(BaseModel):
    id: str
    order_id: str
    provider: str
    provider_ref: str
    amount: Decimal
    currency: str
    status: str
    redirect_url: Optional[str]
    failure_reason: Optional[str]
    provider_transaction_id: Optional[str]
    created_by: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    confirmed_at: Optional[str]

    model_config = {"from_attributes": True}


class TransactionPage(BaseModel):
    items: list[TransactionDetail]
    total: int
    page: int
    limit: int
    pages: int


class PaymentStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_provider: dict[str, int]
    paid_totals: dict[str, Decimal]  # currency -> sum of PAID amounts


class EventEntry(BaseModel):
    id: int
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]

    model_config = {"from_attributes": True}


class TransactionTrace(BaseModel):
    transaction: TransactionDetail
    audit_trail: list[EventEntry]


class StatusUpdateBody(BaseModel):
    status: str
    reason: str = ""


def _txn_to_detail(t: Transaction) -> TransactionDetail:
    return TransactionDetail(
        id=t.id,
        order_id=t.order_id,
        provider=t.provider,
        provider_ref=t.provider_ref,
        amount=t.amount,
        currency=t.currency,
        status=t.status,
        redirect_url=t.redirect_url,
        failure_reason=t.failure_reason,
        provider_transaction_id=t.provider_transaction_id,
        created_by=t.created_by,
        created_at=t.created_at.isoformat() if t.created_at else None,
        updated_at=t.updated_at.isoformat() if t.updated_at else None,
        confirmed_at=t.confirmed_at.isoformat() if t.confirmed_at else None,
    )


def _page(items: list[Transaction], total: int, page: int, limit: int) -> TransactionPage:
    return TransactionPage(
        items=[_txn_to_detail(t) for t in items],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


async def _ensure_can_view_order(
    session: AsyncSession, orchestrator: PaymentOrchestrator, caller: Caller, order_id: str
) -> None:
    if orchestrator.is_elevated(caller):
        return
    owner = await session.scalar(select(Order.user_id).where(Order.id == order_id))
    if owner is None:
        raise OrderNotFound(f"Order not found: {order_id}")
    if owner != caller.user_id:
        raise Forbidden(f"User {caller.user_id} may not view order {order_id}")


async def _load_transaction(session: AsyncSession, transaction_id: str) -> Transaction:
    txn = await session.get(Transaction, transaction_id)
    if txn is None:
        raise TransactionNotFound(f"Transaction not found: {transaction_id}")
    return txn


@router.post("", response_model=PaymentCreated, status_code=201)
async def create_payment(
    body: CreatePaymentBody,
    request: Request,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Open a payment attempt and return where to send the customer.

    MANUAL payments (staff only) are confirmed immediately and carry no
    redirect URL.
    """
    created = await orchestrator.create_transaction(
        order_id=body.order_id,
        provider=body.provider,
        amount=body.amount,
        currency=body.currency,
        caller=caller,
        return_url=body.return_url,
        cancel_url=body.cancel_url,
        description=body.description,
        client_ip=request.client.host if request.client else "127.0.0.1",
    )
    return PaymentCreated(
        transaction_id=created.transaction.id,
        provider_ref=created.transaction.provider_ref,
        redirect_url=created.redirect_url,
        status=created.transaction.status,
    )


@router.get("", response_model=TransactionPage)
async def list_payments(
    status: Optional[str] = Query(None, description="Filter by status"),
    provider: Optional[str] = Query(None, description="Filter by provider"),
    order_id: Optional[str] = Query(None, description="Filter by order"),
    date_from: Optional[datetime] = Query(None, description="Created at or after"),
    date_to: Optional[datetime] = Query(None, description="Created at or before"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    """List transactions with optional filters, newest first."""
    orchestrator.require_elevated(caller, "list all payments")

    stmt = select(Transaction)
    if status:
        stmt = stmt.where(Transaction.status == status.upper())
    if provider:
        stmt = stmt.where(Transaction.provider == provider.upper())
    if order_id:
        stmt = stmt.where(Transaction.order_id == order_id)
    if date_from:
        stmt = stmt.where(Transaction.created_at >= date_from)
    if date_to:
        stmt = stmt.where(Transaction.created_at <= date_to)

    total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
    result = await session.execute(
        stmt.order_by(Transaction.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    return _page(list(result.scalars().all()), total or 0, page, limit)


@router.get("/my", response_model=TransactionPage)
async def list_my_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    session: AsyncSession = Depends(get_session),
):
    """Transactions for orders owned by the caller."""
    stmt = (
        select(Transaction)
        .join(Order, Order.id == Transaction.order_id)
        .where(Order.user_id == caller.user_id)
    )
    total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
    result = await session.execute(
        stmt.order_by(Transaction.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    return _page(list(result.scalars().all()), total or 0, page, limit)


@router.get("/stats", response_model=PaymentStats)
async def payment_stats(
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    """Transaction counts per status and provider, plus paid totals per currency."""
    orchestrator.require_elevated(caller, "view payment statistics")

    by_status = {s.value: 0 for s in TransactionStatus}
    rows = await session.execute(select(Transaction.status, func.count()).group_by(Transaction.status))
    for status, count in rows.all():
        by_status[status] = count

    rows = await session.execute(select(Transaction.provider, func.count()).group_by(Transaction.provider))
    by_provider = {provider: count for provider, count in rows.all()}

    # Summed in Python so amounts stay exact on every backend
    rows = await session.execute(
        select(Transaction.currency, Transaction.amount).where(Transaction.status == TransactionStatus.PAID.value)
    )
    paid_totals: dict[str, Decimal] = {}
    for currency, amount in rows.all():
        paid_totals[currency] = paid_totals.get(currency, Decimal("0")) + Decimal(amount)

    return PaymentStats(
        total=sum(by_status.values()),
        by_status=by_status,
        by_provider=by_provider,
        paid_totals=paid_totals,
    )


@router.get("/order/{order_id}", response_model=list[TransactionDetail])
async def list_order_payments(
    order_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    """All attempts for one order, oldest first."""
    await _ensure_can_view_order(session, orchestrator, caller, order_id)
    result = await session.execute(
        select(Transaction).where(Transaction.order_id == order_id).order_by(Transaction.created_at.asc())
    )
    return [_txn_to_detail(t) for t in result.scalars().all()]


@router.get("/{transaction_id}", response_model=TransactionDetail)
async def get_payment(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    txn = await _load_transaction(session, transaction_id)
    await _ensure_can_view_order(session, orchestrator, caller, txn.order_id)
    return _txn_to_detail(txn)


@router.get("/{transaction_id}/trace", response_model=TransactionTrace)
async def get_payment_trace(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    """
    Full audit trail for a transaction.

    Returns the transaction plus every payment event recorded for it, in
    chronological order. Useful when a provider disputes an outcome.
    """
    orchestrator.require_elevated(caller, "view payment traces")
    txn = await _load_transaction(session, transaction_id)

    result = await session.execute(
        select(PaymentEvent)
        .where(PaymentEvent.transaction_id == transaction_id)
        .order_by(PaymentEvent.id.asc())
    )

    audit_trail = []
    for event in result.scalars().all():
        details = None
        if event.details:
            try:
                details = json.loads(event.details)
            except (json.JSONDecodeError, TypeError):
                details = {"raw": event.details}

        audit_trail.append(EventEntry(
            id=event.id,
            action=event.action,
            details=details,
            timestamp=event.timestamp.isoformat() if event.timestamp else None,
        ))

    return TransactionTrace(transaction=_txn_to_detail(txn), audit_trail=audit_trail)


@router.patch("/{transaction_id}", response_model=TransactionDetail)
async def update_payment_status(
    transaction_id: str,
    body: StatusUpdateBody,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Refund, confirm or cancel a transaction by hand."""
    txn = await orchestrator.override_status(transaction_id, body.status, caller, reason=body.reason)
    return _txn_to_detail(txn)


@router.delete("/{transaction_id}")
async def delete_payment(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    deleted = await orchestrator.delete_transaction(transaction_id, caller)
    return {"deleted": deleted}
