"""
Transaction state machine.

    CREATED --accepted--> PENDING_CONFIRMATION
    CREATED --rejected--> FAILED
    PENDING_CONFIRMATION --verified success--> PAID      [terminal]
    PENDING_CONFIRMATION --verified failure--> FAILED    [terminal]
    PAID --administrative refund--> REFUNDED             [terminal]

Everything here is pure: it decides what should happen to a transaction given
its current status and a verified provider outcome. The orchestrator performs
the decision against the database.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.models.enums import PaymentOutcome, TransactionStatus

CREATED = TransactionStatus.CREATED
PENDING = TransactionStatus.PENDING_CONFIRMATION
PAID = TransactionStatus.PAID
FAILED = TransactionStatus.FAILED
REFUNDED = TransactionStatus.REFUNDED

ALLOWED_TRANSITIONS = frozenset({
    (CREATED, PENDING),
    (CREATED, FAILED),
    (PENDING, PAID),
    (PENDING, FAILED),
    (PAID, REFUNDED),
})

# Transitions staff may force through the admin API
ADMIN_TRANSITIONS = frozenset({
    (CREATED, FAILED),
    (PENDING, FAILED),
    (PENDING, PAID),
    (PAID, REFUNDED),
})

_OUTCOME_TARGETS = {
    PaymentOutcome.SUCCEEDED: PAID,
    PaymentOutcome.FAILED: FAILED,
}

# Terminal status -> outcome that reached it (REFUNDED was reached through a success)
_TERMINAL_OUTCOMES = {
    PAID: PaymentOutcome.SUCCEEDED,
    REFUNDED: PaymentOutcome.SUCCEEDED,
    FAILED: PaymentOutcome.FAILED,
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return (current, target) in ALLOWED_TRANSITIONS


def can_override(current: TransactionStatus, target: TransactionStatus) -> bool:
    return (current, target) in ADMIN_TRANSITIONS


class CallbackAction(str, Enum):
    APPLY = "apply"  # Move to decision.target
    KEEP_PENDING = "keep_pending"  # Ambiguous report; stay (or become) PENDING_CONFIRMATION
    NOOP = "noop"  # Replay of an outcome already recorded
    ANOMALY = "anomaly"  # Conflicts with recorded state; never overwrite
    AMOUNT_MISMATCH = "amount_mismatch"


@dataclass(frozen=True)
class CallbackDecision:
    action: CallbackAction
    target: Optional[TransactionStatus] = None
    reason: str = ""
    confirms_order: bool = False
    reverts_order: bool = False


def decide_callback(
    current: TransactionStatus,
    outcome: PaymentOutcome,
    amount_matches: bool = True,
    order_already_paid: bool = False,
) -> CallbackDecision:
    """
    Decide how a verified callback affects a transaction.

    Args:
        current: Status before the callback (read under the order lock).
        outcome: What the provider reports.
        amount_matches: Whether the reported amount equals the recorded one.
        order_already_paid: Another transaction of the same order is PAID.

    The order is confirmed only on the first move into PAID, which can only
    start from a non-terminal status; a replayed success finds PAID and is a
    no-op.
    """
    if outcome is PaymentOutcome.IGNORED:
        return CallbackDecision(CallbackAction.NOOP, reason="event carries no payment outcome")

    if current.is_terminal:
        recorded = _TERMINAL_OUTCOMES[current]
        if outcome is recorded:
            return CallbackDecision(CallbackAction.NOOP, reason=f"{current.value} already recorded")
        if outcome is PaymentOutcome.PENDING:
            return CallbackDecision(CallbackAction.NOOP, reason=f"stale pending report for {current.value}")
        return CallbackDecision(
            CallbackAction.ANOMALY,
            reason=f"provider reports {outcome.value} but transaction is {current.value}",
        )

    # CREATED here means the callback overtook the create response; the
    # provider clearly accepted the request, so treat it as pending.
    if outcome is PaymentOutcome.PENDING:
        return CallbackDecision(CallbackAction.KEEP_PENDING, target=PENDING, reason="ambiguous provider status")

    target = _OUTCOME_TARGETS[outcome]

    if target is PAID:
        if not amount_matches:
            return CallbackDecision(CallbackAction.AMOUNT_MISMATCH, reason="reported amount differs from recorded amount")
        if order_already_paid:
            return CallbackDecision(
                CallbackAction.ANOMALY,
                reason="order already paid by another transaction; refund required",
            )
        return CallbackDecision(CallbackAction.APPLY, target=PAID, reason="verified success", confirms_order=True)

    return CallbackDecision(
        CallbackAction.APPLY,
        target=FAILED,
        reason="verified failure",
        reverts_order=not order_already_paid,
    )
