"""Fakes and payload builders shared by the test modules."""

import asyncio
from decimal import Decimal
from typing import Optional

from app.engine.errors import ProviderRejected, ProviderUnavailable
from app.engine.orchestrator import Caller
from app.models.enums import PaymentOutcome, VerificationFailure
from app.orders.gateway import SqlOrderGateway
from app.providers.base import (
    CallbackPayload,
    CreatePaymentResult,
    PaymentProvider,
    PaymentRequest,
    VerificationResult,
)
from app.providers.signature import VNPAY_SCHEME, sign
from app.providers.vnpay import to_vnpay_amount

VNPAY_SECRET = "test-vnpay-secret"
VNPAY_TMN = "TESTTMN1"

CUSTOMER = Caller(user_id="U1", role="CUSTOMER")
OTHER_CUSTOMER = Caller(user_id="U2", role="CUSTOMER")
STAFF = Caller(user_id="S1", role="STAFF")


class ScriptedProvider(PaymentProvider):
    """
    Fake gateway whose create behaviour is chosen per test.

    mode: "accept", "reject", "unavailable", "explode" or "hang".
    settle: accepted creates report the payment as already settled.
    gate: when set, creates wait on it after being recorded in requests.
    Callbacks are trusted JSON: {"ref", "outcome", "amount"}.
    """

    supported_currencies = frozenset({"VND", "USD"})

    def __init__(self, mode: str = "accept", delay: float = 0.0, name: str = "FAKEPAY"):
        self.mode = mode
        self.delay = delay
        self.settle = False
        self.gate: Optional[asyncio.Event] = None
        self._name = name
        self.requests: list[PaymentRequest] = []

    @property
    def name(self) -> str:
        return self._name

    async def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.mode == "hang":
            await asyncio.sleep(3600)
        if self.mode == "reject":
            raise ProviderRejected("card declined")
        if self.mode == "unavailable":
            raise ProviderUnavailable("connection reset")
        if self.mode == "explode":
            raise RuntimeError("adapter bug")
        return CreatePaymentResult(
            provider_ref=request.provider_ref,
            redirect_url=f"https://pay.example.test/{request.provider_ref}",
            settled=self.settle,
        )

    def verify_callback(self, payload: CallbackPayload) -> VerificationResult:
        data = payload.parameters()
        if data.get("forged"):
            return VerificationResult.rejected(VerificationFailure.FORGED, "bad signature", provider_ref=data.get("ref"))
        return VerificationResult(
            verified=True,
            provider_ref=data["ref"],
            outcome=PaymentOutcome(data["outcome"]),
            amount=Decimal(str(data["amount"])) if data.get("amount") is not None else None,
            evidence=data,
        )


class CountingOrderGateway(SqlOrderGateway):
    """Order gateway that records how often the booking side was told."""

    def __init__(self):
        self.paid_calls: list[str] = []
        self.unpaid_calls: list[str] = []

    async def mark_paid(self, session, order_id):
        self.paid_calls.append(order_id)
        await super().mark_paid(session, order_id)

    async def mark_unpaid(self, session, order_id):
        self.unpaid_calls.append(order_id)
        await super().mark_unpaid(session, order_id)


def vnpay_callback(
    provider_ref: str,
    amount: Decimal,
    response_code: str = "00",
    secret: str = VNPAY_SECRET,
    method: str = "GET",
    **overrides: Optional[str],
) -> CallbackPayload:
    """A VNPAY IPN signed the way VNPAY signs it."""
    params = {
        "vnp_TmnCode": VNPAY_TMN,
        "vnp_TxnRef": provider_ref,
        "vnp_Amount": str(to_vnpay_amount(Decimal(amount))),
        "vnp_ResponseCode": response_code,
        "vnp_TransactionStatus": response_code,
        "vnp_TransactionNo": "14226112",
        "vnp_BankCode": "NCB",
        "vnp_CardType": "ATM",
        "vnp_PayDate": "20240115103000",
        "vnp_OrderInfo": "Thanh toan don hang",
    }
    params.update(overrides)
    params["vnp_SecureHash"] = sign(params, secret, VNPAY_SCHEME)
    return CallbackPayload(method=method, query=params)
