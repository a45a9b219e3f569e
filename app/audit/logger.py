"""
Immutable audit trail for payment operations.

Every state change gets an append-only payment_events row with:
  - Transaction ID and Order ID (which attempt, which booking)
  - Provider
  - Action (what happened)
  - Details (context, provider codes, error messages)
  - Timestamp (UTC)

Rejected callbacks and anomalies are recorded the same way and also go to
dedicated loggers so security monitoring can alert on them. These records are
never modified or deleted, not even when a transaction is.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import VerificationFailure
from app.models.transaction import PaymentEvent

logger = logging.getLogger("payment_gateway.audit")
security_logger = logging.getLogger("payment_gateway.security")


def to_json(details: Optional[dict[str, Any]]) -> Optional[str]:
    """Serialize details; Decimals, datetimes and enums become strings."""
    if not details:
        return None
    return json.dumps(details, default=str, sort_keys=True)


async def log_event(
    session: AsyncSession,
    action: str,
    transaction_id: Optional[str] = None,
    order_id: Optional[str] = None,
    provider: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    level: int = logging.INFO,
) -> PaymentEvent:
    """
    Create an immutable audit log entry.

    Args:
        session: Database session; the entry commits with the caller's unit of work.
        action: What happened (e.g. "transaction_created", "callback_applied").
        transaction_id: The internal transaction this event relates to.
        order_id: The order being paid.
        provider: Gateway involved.
        details: Arbitrary context (serialized to JSON).
        level: Log level for the mirrored log line.

    Returns:
        The created PaymentEvent record.
    """
    serialized = to_json(details)
    entry = PaymentEvent(
        transaction_id=transaction_id,
        order_id=order_id,
        provider=provider,
        action=action,
        details=serialized,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.log(
        level,
        "AUDIT | txn=%s order=%s provider=%s action=%s | %s",
        transaction_id or "-",
        order_id or "-",
        provider or "-",
        action,
        serialized[:200] if serialized else "",
    )
    return entry


async def log_rejected_callback(
    session: AsyncSession,
    provider: str,
    failure: VerificationFailure,
    message: str,
    provider_ref: Optional[str] = None,
    evidence: Optional[dict[str, Any]] = None,
) -> PaymentEvent:
    """Record a callback that failed verification. Nothing in it is trusted."""
    security_logger.warning(
        "Rejected %s callback: %s (%s) claimed_ref=%s",
        provider,
        failure.value,
        message,
        provider_ref or "-",
    )
    return await log_event(
        session,
        f"callback_{failure.value.lower()}",
        provider=provider,
        details={"failure": failure.value, "message": message, "claimed_ref": provider_ref, "evidence": evidence},
        level=logging.WARNING,
    )


async def log_anomaly(
    session: AsyncSession,
    kind: str,
    message: str,
    transaction_id: Optional[str] = None,
    order_id: Optional[str] = None,
    provider: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> PaymentEvent:
    """Record a verified but inconsistent event that needs human review."""
    return await log_event(
        session,
        f"anomaly_{kind}",
        transaction_id=transaction_id,
        order_id=order_id,
        provider=provider,
        details={"message": message, **(details or {})},
        level=logging.WARNING,
    )
