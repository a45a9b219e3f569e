"""Liveness endpoint."""

from fastapi import APIRouter, Depends

from app.api.deps import get_orchestrator
from app.engine.orchestrator import PaymentOrchestrator

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return {"status": "ok", "providers": sorted(orchestrator.providers)}
