"""
Provider callback ingress.

GET|POST /callbacks/{provider} — IPNs, webhooks and browser returns.

The body and headers are handed to the orchestrator untouched (STRIPE signs
the raw bytes). The gateway always gets a 200 with the acknowledgement it
expects, so a forged or unknown callback learns nothing from the status code.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from app.api.deps import get_orchestrator
from app.engine.errors import Conflict, TransactionNotFound, VerificationFailed
from app.engine.orchestrator import PaymentOrchestrator
from app.models.enums import ReceiptStatus
from app.providers.base import CallbackPayload

logger = logging.getLogger("payment_gateway.callbacks")

router = APIRouter(prefix="/callbacks", tags=["callbacks"])


@router.api_route("/{provider}", methods=["GET", "POST"])
async def receive_callback(
    provider: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    adapter = orchestrator.providers.find(provider)
    if adapter is None:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    payload = CallbackPayload(
        method=request.method,
        query=dict(request.query_params),
        body=await request.body(),
        headers={k.lower(): v for k, v in request.headers.items()},
    )

    try:
        receipt = await orchestrator.apply_callback(adapter.name, payload)
        status = receipt.status
    except VerificationFailed:
        status = ReceiptStatus.REJECTED
    except TransactionNotFound:
        status = ReceiptStatus.NOT_FOUND
    except Conflict as e:
        logger.warning("Conflicting %s callback: %s", adapter.name, e.message)
        status = ReceiptStatus.ANOMALY

    return adapter.acknowledge(status)
