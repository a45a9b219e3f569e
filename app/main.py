"""
Payment Gateway — Payment Orchestration and Verification API.

Opens payment attempts with VNPAY, MOMO and STRIPE (plus staff-recorded
MANUAL payments), verifies every provider callback cryptographically, and
confirms the booking exactly once when a payment succeeds.

Start the server:
    uvicorn app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.callbacks import router as callbacks_router
from app.api.health import router as health_router
from app.api.payments import router as payments_router
from app.config import settings
from app.database import init_db
from app.engine.errors import PaymentError

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    await init_db()
    yield


app = FastAPI(
    title="Payment Gateway",
    description=(
        "Payment orchestration and verification service for bookings. "
        "Routes payments through VNPAY, MOMO and STRIPE with signed callbacks, "
        "idempotent confirmation and an immutable audit trail."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


app.include_router(health_router)
app.include_router(payments_router, prefix="/api")
app.include_router(callbacks_router, prefix="/api")
