"""
Payment orchestrator, the core execution engine.

The only component with business logic. It picks an adapter from the
provider registry, records every attempt before the gateway hears about it,
applies verified callbacks through the state machine, and tells the booking
side when an order is paid.

The flow for a create:
  1. Request validation (provider, amount, currency, return URL)
  2. Under the order lock: ownership, duplicate and in-flight checks,
     then a CREATED row is committed
  3. Adapter call with an explicit timeout, never retried
  4. Under the order lock again: PENDING_CONFIRMATION or FAILED

The flow for a callback:
  1. Adapter verification (unverified payloads change nothing)
  2. Lookup by provider_ref
  3. Under the order lock: decide from the pre-callback status, apply,
     confirm the order only on the first move into PAID

Idempotency guarantees:
  - At most one PAID transaction per order (order lock + partial unique index)
  - provider_ref is unique (collision check + unique index)
  - Replayed callbacks are no-ops; conflicting ones are recorded, never applied
"""

import asyncio
import logging
import secrets
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.audit.logger import log_anomaly, log_event, log_rejected_callback, to_json
from app.config import settings
from app.engine.errors import (
    Conflict,
    DuplicatePayment,
    Forbidden,
    OrderNotFound,
    ProviderError,
    ProviderUnavailable,
    TransactionNotFound,
    ValidationError,
    VerificationFailed,
)
from app.engine.locks import KeyedLock
from app.engine.state_machine import CallbackAction, can_override, can_transition, decide_callback
from app.engine.validation import check_create_request
from app.models.enums import PaymentOutcome, ReceiptStatus, TransactionStatus, VerificationFailure
from app.models.transaction import Transaction
from app.orders.gateway import OrderGateway
from app.providers.base import CallbackPayload, CreatePaymentResult, PaymentRequest, VerificationResult
from app.providers.registry import ProviderRegistry

logger = logging.getLogger("payment_gateway.orchestrator")

MAX_REF_ATTEMPTS = 5


@dataclass(frozen=True)
class Caller:
    """Identity supplied by the upstream auth layer."""

    user_id: str
    role: Optional[str] = None


@dataclass
class CreatedPayment:
    transaction: Transaction
    redirect_url: Optional[str]


@dataclass
class CallbackReceipt:
    """What happened to an inbound callback; drives the acknowledgement."""

    status: ReceiptStatus
    provider: str
    provider_ref: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None
    message: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e


class PaymentOrchestrator:
    """
    Creates transactions and applies provider callbacks.

    Every public operation opens its own session from session_factory so
    concurrent requests never share one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers: ProviderRegistry,
        orders: OrderGateway,
        provider_timeout: Optional[float] = None,
        attempt_ttl_minutes: Optional[int] = None,
        elevated_roles: Optional[Iterable[str]] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self._session_factory = session_factory
        self._providers = providers
        self._orders = orders
        self._provider_timeout = (
            provider_timeout if provider_timeout is not None else settings.provider_timeout_seconds
        )
        self._attempt_ttl = timedelta(
            minutes=attempt_ttl_minutes if attempt_ttl_minutes is not None else settings.payment_attempt_ttl_minutes
        )
        roles = elevated_roles if elevated_roles is not None else settings.elevated_roles
        self._elevated_roles = frozenset(role.upper() for role in roles)
        self._locks = locks or KeyedLock()

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    def is_elevated(self, caller: Caller) -> bool:
        return bool(caller.role) and caller.role.upper() in self._elevated_roles

    def require_elevated(self, caller: Caller, action: str) -> None:
        if not self.is_elevated(caller):
            raise Forbidden(f"User {caller.user_id} is not allowed to {action}")

    # ─── Create ──────────────────────────────────────────────────────────

    async def create_transaction(
        self,
        order_id: str,
        provider: str,
        amount: Any,
        currency: str,
        caller: Caller,
        return_url: str = "",
        cancel_url: Optional[str] = None,
        description: str = "",
        client_ip: str = "127.0.0.1",
        metadata: Optional[dict] = None,
    ) -> CreatedPayment:
        """
        Record a payment attempt and open it with the provider.

        Raises:
            ValidationError: Bad provider, amount, currency or return URL.
            OrderNotFound: Unknown order.
            Forbidden: Caller neither owns the order nor holds an elevated role.
            DuplicatePayment: The order already has a PAID transaction.
            Conflict: Another create for the order is still waiting on its gateway.
            ProviderRejected: The gateway refused; the attempt is FAILED.
            ProviderUnavailable: The gateway timed out; the attempt is FAILED.
        """
        adapter = self._providers.find(provider)
        amount = to_decimal(amount)
        currency = (currency or "").upper()

        check = check_create_request(adapter, provider, amount, currency, return_url)
        if not check.valid:
            raise ValidationError(check.message)

        elevated = self.is_elevated(caller)
        if adapter.requires_elevated_role and not elevated:
            raise Forbidden(f"Only staff may record {adapter.name} payments")

        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                order = await self._orders.get_order(session, order_id)
                if order is None:
                    raise OrderNotFound(f"Order not found: {order_id}")
                if order.user_id != caller.user_id and not elevated:
                    raise Forbidden(f"User {caller.user_id} may not pay for order {order_id}")

                await self._guard_new_attempt(session, order_id)

                txn = Transaction(
                    order_id=order_id,
                    provider=adapter.name,
                    provider_ref=await self._new_provider_ref(session, adapter.name),
                    amount=amount,
                    currency=currency,
                    status=TransactionStatus.CREATED.value,
                    created_by=caller.user_id,
                    created_at=_utcnow(),
                )
                session.add(txn)
                await session.flush()
                await log_event(
                    session,
                    "transaction_created",
                    transaction_id=txn.id,
                    order_id=order_id,
                    provider=adapter.name,
                    details={"provider_ref": txn.provider_ref, "amount": amount, "currency": currency,
                             "by": caller.user_id},
                )
                await self._commit(session)
                transaction_id = txn.id
                provider_ref = txn.provider_ref

        request = PaymentRequest(
            provider_ref=provider_ref,
            order_id=order_id,
            amount=amount,
            currency=currency,
            return_url=return_url,
            cancel_url=cancel_url,
            description=description,
            client_ip=client_ip,
            metadata={"order_id": order_id, **(metadata or {})},
        )

        error: Optional[Exception] = None
        created: Optional[CreatePaymentResult] = None
        try:
            created = await asyncio.wait_for(adapter.create_payment(request), timeout=self._provider_timeout)
        except asyncio.TimeoutError:
            error = ProviderUnavailable(f"{adapter.name} did not respond within {self._provider_timeout}s")
        except ProviderError as e:
            error = e
        except Exception as e:
            error = e
            logger.exception("Unexpected error creating %s payment %s", adapter.name, provider_ref)

        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                txn = await self._get_for_update(session, transaction_id)
                if error is not None:
                    await self._record_create_failure(session, txn, error)
                    await self._commit(session)
                    raise error

                try:
                    superseded = await self._record_create_success(session, txn, created)
                    await self._commit(session)
                except IntegrityError as e:
                    # Autoflush can hit the store constraints before the commit does
                    await session.rollback()
                    conflict = Conflict(f"Concurrent update rejected by the store: {e.orig}")
                    await self._fail_stranded_attempt(transaction_id, conflict.message)
                    raise conflict from e
                except Conflict as e:
                    await self._fail_stranded_attempt(transaction_id, e.message)
                    raise

        if superseded:
            raise DuplicatePayment(f"Order {order_id} was paid while recording {provider_ref}")

        logger.info(
            "Transaction %s (%s) for order %s is %s",
            txn.provider_ref,
            adapter.name,
            order_id,
            txn.status,
        )
        return CreatedPayment(transaction=txn, redirect_url=created.redirect_url)

    async def _guard_new_attempt(self, session: AsyncSession, order_id: str) -> None:
        existing = (
            await session.execute(select(Transaction).where(Transaction.order_id == order_id))
        ).scalars().all()

        paid = [t for t in existing if t.status == TransactionStatus.PAID.value]
        if paid:
            raise DuplicatePayment(f"Order {order_id} is already paid ({paid[0].provider_ref})")

        # Only a create still waiting on its gateway blocks; redirected attempts may coexist
        cutoff = _utcnow() - self._attempt_ttl
        in_flight = [
            t for t in existing
            if t.status == TransactionStatus.CREATED.value and _aware(t.created_at) > cutoff
        ]
        if in_flight:
            raise Conflict(
                f"Order {order_id} already has a payment attempt in flight ({in_flight[0].provider_ref})"
            )

    async def _new_provider_ref(self, session: AsyncSession, provider_name: str) -> str:
        for _ in range(MAX_REF_ATTEMPTS):
            ref = f"{provider_name}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
            taken = await session.scalar(select(Transaction.id).where(Transaction.provider_ref == ref))
            if taken is None:
                return ref
        raise Conflict("Could not allocate a unique provider reference")

    async def _record_create_failure(self, session: AsyncSession, txn: Transaction, error: Exception) -> None:
        reason = getattr(error, "message", None) or str(error) or type(error).__name__
        if txn.status == TransactionStatus.CREATED.value:
            self._transition(txn, TransactionStatus.FAILED)
            txn.failure_reason = reason
        await log_event(
            session,
            "create_failed",
            transaction_id=txn.id,
            order_id=txn.order_id,
            provider=txn.provider,
            details={
                "error": reason,
                "type": type(error).__name__,
                "retriable": getattr(error, "retriable", False),
                "status": txn.status,
            },
            level=logging.WARNING,
        )

    async def _record_create_success(
        self, session: AsyncSession, txn: Transaction, created: CreatePaymentResult
    ) -> bool:
        """Apply an accepted create. Returns True when a settlement lost to an existing PAID one."""
        txn.redirect_url = created.redirect_url
        if created.provider_transaction_id and not txn.provider_transaction_id:
            txn.provider_transaction_id = created.provider_transaction_id

        if txn.status != TransactionStatus.CREATED.value:
            # A callback overtook the create response; it already moved the row
            await log_event(
                session,
                "create_accepted_late",
                transaction_id=txn.id,
                order_id=txn.order_id,
                provider=txn.provider,
                details={"status": txn.status},
            )
            return False

        self._transition(txn, TransactionStatus.PENDING_CONFIRMATION)
        await log_event(
            session,
            "create_accepted",
            transaction_id=txn.id,
            order_id=txn.order_id,
            provider=txn.provider,
            details={"redirect_url": created.redirect_url, "raw": created.raw},
        )

        if created.settled:
            if await self._has_other_paid(session, txn):
                self._transition(txn, TransactionStatus.FAILED)
                txn.failure_reason = "Order was paid by another transaction"
                await log_anomaly(
                    session,
                    "duplicate_settlement",
                    f"{txn.provider_ref} settled after order {txn.order_id} was already paid",
                    transaction_id=txn.id,
                    order_id=txn.order_id,
                    provider=txn.provider,
                    details={"raw": created.raw},
                )
                return True
            self._transition(txn, TransactionStatus.PAID)
            txn.raw_provider_payload = to_json(created.raw)
            await self._orders.mark_paid(session, txn.order_id)
            await log_event(
                session,
                "transaction_paid",
                transaction_id=txn.id,
                order_id=txn.order_id,
                provider=txn.provider,
                details={"source": "settled_on_create"},
            )
        return False

    async def _fail_stranded_attempt(self, transaction_id: str, reason: str) -> None:
        """Close an attempt whose outcome could not be stored, so it never stays CREATED."""
        async with self._session_factory() as session:
            txn = await self._get_for_update(session, transaction_id)
            if txn.status != TransactionStatus.CREATED.value:
                return
            self._transition(txn, TransactionStatus.FAILED)
            txn.failure_reason = reason
            await log_anomaly(
                session,
                "create_not_recorded",
                f"Outcome of {txn.provider_ref} was rejected by the store",
                transaction_id=txn.id,
                order_id=txn.order_id,
                provider=txn.provider,
                details={"error": reason},
            )
            await self._commit(session)

    # ─── Callbacks ───────────────────────────────────────────────────────

    async def apply_callback(self, provider: str, payload: CallbackPayload) -> CallbackReceipt:
        """
        Verify an inbound callback and apply it to its transaction.

        Raises:
            VerificationFailed: The payload is not authentic. It was recorded
                for security review and changed nothing.
            TransactionNotFound: A verified callback names a reference we
                never issued.
        """
        adapter = self._providers.find(provider)
        if adapter is None:
            raise ValidationError(f"Payment provider not supported: {provider}")

        result = adapter.verify_callback(payload)

        if not result.verified:
            failure = result.failure or VerificationFailure.MALFORMED
            async with self._session_factory() as session:
                await log_rejected_callback(
                    session,
                    adapter.name,
                    failure,
                    result.message,
                    provider_ref=result.provider_ref,
                    evidence=result.evidence,
                )
                await self._commit(session)
            raise VerificationFailed(failure, result.message)

        if result.outcome is PaymentOutcome.IGNORED:
            logger.info("Ignoring verified %s callback: %s", adapter.name, result.message)
            return CallbackReceipt(status=ReceiptStatus.IGNORED, provider=adapter.name, message=result.message)

        async with self._session_factory() as session:
            found = (
                await session.execute(select(Transaction).where(Transaction.provider_ref == result.provider_ref))
            ).scalar_one_or_none()

            if found is None:
                await log_anomaly(
                    session,
                    "unknown_reference",
                    f"Verified {adapter.name} callback for unknown reference {result.provider_ref}",
                    provider=adapter.name,
                    details={"provider_ref": result.provider_ref, "outcome": result.outcome},
                )
                await self._commit(session)
                raise TransactionNotFound(f"No transaction with provider reference {result.provider_ref}")

            if found.provider != adapter.name:
                await log_rejected_callback(
                    session,
                    adapter.name,
                    VerificationFailure.FORGED,
                    f"Reference belongs to {found.provider}",
                    provider_ref=result.provider_ref,
                )
                await self._commit(session)
                raise VerificationFailed(
                    VerificationFailure.FORGED, f"{result.provider_ref} was not issued by {adapter.name}"
                )
            transaction_id, order_id = found.id, found.order_id

        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                txn = await self._get_for_update(session, transaction_id)
                receipt = await self._apply_verified(session, txn, result)
                await self._commit(session)
        return receipt

    async def _apply_verified(
        self, session: AsyncSession, txn: Transaction, result: VerificationResult
    ) -> CallbackReceipt:
        before = TransactionStatus(txn.status)
        amount_matches = result.amount is None or result.amount == txn.amount
        order_already_paid = await self._has_other_paid(session, txn)
        decision = decide_callback(before, result.outcome, amount_matches, order_already_paid)

        context = {
            "provider_ref": txn.provider_ref,
            "before": before,
            "outcome": result.outcome,
            "reported_amount": result.amount,
            "recorded_amount": txn.amount,
            "message": result.message,
            "reason": decision.reason,
        }

        def receipt(status: ReceiptStatus) -> CallbackReceipt:
            return CallbackReceipt(
                status=status,
                provider=txn.provider,
                provider_ref=txn.provider_ref,
                transaction_id=txn.id,
                transaction_status=txn.status,
                message=decision.reason,
            )

        if decision.action is CallbackAction.NOOP:
            await log_event(
                session, "callback_duplicate", transaction_id=txn.id, order_id=txn.order_id,
                provider=txn.provider, details=context,
            )
            return receipt(ReceiptStatus.DUPLICATE)

        if decision.action in (CallbackAction.ANOMALY, CallbackAction.AMOUNT_MISMATCH):
            kind = "amount_mismatch" if decision.action is CallbackAction.AMOUNT_MISMATCH else "conflicting_callback"
            await log_anomaly(
                session,
                kind,
                f"{txn.provider} callback conflicts with {txn.provider_ref}: {decision.reason}",
                transaction_id=txn.id,
                order_id=txn.order_id,
                provider=txn.provider,
                details={**context, "evidence": result.evidence},
            )
            if decision.action is CallbackAction.AMOUNT_MISMATCH:
                return receipt(ReceiptStatus.AMOUNT_MISMATCH)
            return receipt(ReceiptStatus.ANOMALY)

        # Non-terminal from here on: evidence may still be updated
        txn.raw_provider_payload = to_json(result.evidence)
        if result.provider_transaction_id:
            txn.provider_transaction_id = result.provider_transaction_id

        if before is TransactionStatus.CREATED:
            self._transition(txn, TransactionStatus.PENDING_CONFIRMATION)

        if decision.action is CallbackAction.KEEP_PENDING:
            await log_event(
                session, "callback_pending", transaction_id=txn.id, order_id=txn.order_id,
                provider=txn.provider, details=context,
            )
            return receipt(ReceiptStatus.PENDING)

        self._transition(txn, decision.target)
        if decision.target is TransactionStatus.FAILED:
            txn.failure_reason = result.message
        if decision.confirms_order:
            await self._orders.mark_paid(session, txn.order_id)
        if decision.reverts_order:
            await self._orders.mark_unpaid(session, txn.order_id)

        await log_event(
            session, "callback_applied", transaction_id=txn.id, order_id=txn.order_id,
            provider=txn.provider, details={**context, "after": txn.status},
        )
        logger.info("Transaction %s: %s -> %s", txn.provider_ref, before.value, txn.status)
        return receipt(ReceiptStatus.APPLIED)

    # ─── Administration ──────────────────────────────────────────────────

    async def override_status(
        self,
        transaction_id: str,
        status: str,
        caller: Caller,
        reason: str = "",
    ) -> Transaction:
        """
        Force an administrative transition (refund, manual confirm, cancel).

        Raises:
            Forbidden: Caller is not staff.
            ValidationError: Unknown status.
            Conflict: Transition not allowed from the current status.
            DuplicatePayment: Confirming would give the order a second PAID.
        """
        self.require_elevated(caller, "change payment status")
        try:
            target = TransactionStatus(status.upper())
        except ValueError as e:
            raise ValidationError(f"Unknown status: {status}") from e

        order_id = await self._order_id_of(transaction_id)
        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                txn = await self._get_for_update(session, transaction_id)
                before = TransactionStatus(txn.status)
                if not can_override(before, target):
                    raise Conflict(f"Cannot change {txn.provider_ref} from {before.value} to {target.value}")

                if target is TransactionStatus.PAID:
                    if await self._has_other_paid(session, txn):
                        raise DuplicatePayment(f"Order {txn.order_id} is already paid")
                    self._transition(txn, target, allowed=can_override)
                    await self._orders.mark_paid(session, txn.order_id)
                elif target is TransactionStatus.REFUNDED:
                    self._transition(txn, target, allowed=can_override)
                    await self._orders.mark_unpaid(session, txn.order_id)
                else:
                    self._transition(txn, target, allowed=can_override)
                    txn.failure_reason = reason or "Cancelled by staff"

                await log_event(
                    session,
                    "status_override",
                    transaction_id=txn.id,
                    order_id=txn.order_id,
                    provider=txn.provider,
                    details={"from": before, "to": target, "reason": reason, "by": caller.user_id},
                    level=logging.WARNING,
                )
                await self._commit(session)

        logger.warning(
            "Transaction %s overridden %s -> %s by %s",
            txn.provider_ref, before.value, target.value, caller.user_id,
        )
        return txn

    async def delete_transaction(self, transaction_id: str, caller: Caller) -> str:
        """
        Administrative removal of a transaction record.

        PAID transactions must be refunded first. Audit events are kept.
        """
        self.require_elevated(caller, "delete payments")
        order_id = await self._order_id_of(transaction_id)
        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                txn = await self._get_for_update(session, transaction_id)
                if txn.status == TransactionStatus.PAID.value:
                    raise Conflict(f"Refund {txn.provider_ref} before deleting it")

                await log_event(
                    session,
                    "transaction_deleted",
                    transaction_id=txn.id,
                    order_id=txn.order_id,
                    provider=txn.provider,
                    details={"provider_ref": txn.provider_ref, "status": txn.status, "amount": txn.amount,
                             "by": caller.user_id},
                    level=logging.WARNING,
                )
                await session.delete(txn)
                await self._commit(session)
        return transaction_id

    # ─── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _transition(
        txn: Transaction,
        target: TransactionStatus,
        allowed: Callable[[TransactionStatus, TransactionStatus], bool] = can_transition,
    ) -> None:
        current = TransactionStatus(txn.status)
        if not allowed(current, target):
            raise Conflict(f"Illegal transition {current.value} -> {target.value} for {txn.provider_ref}")
        txn.status = target.value
        if target.is_terminal:
            txn.confirmed_at = _utcnow()

    async def _get_for_update(self, session: AsyncSession, transaction_id: str) -> Transaction:
        txn = (
            await session.execute(
                select(Transaction).where(Transaction.id == transaction_id).with_for_update()
            )
        ).scalar_one_or_none()
        if txn is None:
            raise TransactionNotFound(f"Transaction not found: {transaction_id}")
        return txn

    async def _order_id_of(self, transaction_id: str) -> str:
        async with self._session_factory() as session:
            order_id = await session.scalar(select(Transaction.order_id).where(Transaction.id == transaction_id))
        if order_id is None:
            raise TransactionNotFound(f"Transaction not found: {transaction_id}")
        return order_id

    async def _has_other_paid(self, session: AsyncSession, txn: Transaction) -> bool:
        other = await session.scalar(
            select(Transaction.id).where(
                Transaction.order_id == txn.order_id,
                Transaction.status == TransactionStatus.PAID.value,
                Transaction.id != txn.id,
            )
        )
        return other is not None

    async def _commit(self, session: AsyncSession) -> None:
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise Conflict(f"Concurrent update rejected by the store: {e.orig}") from e
