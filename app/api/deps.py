"""Request-scoped dependencies shared by the payment routers."""

from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException

from app.database import async_session
from app.engine.orchestrator import Caller, PaymentOrchestrator
from app.orders.gateway import SqlOrderGateway
from app.providers.registry import build_default_registry


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    """Identity forwarded by the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    return Caller(user_id=x_user_id, role=x_user_role)


@lru_cache
def get_orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator(async_session, build_default_registry(), SqlOrderGateway())
