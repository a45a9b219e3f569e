"""
VNPAY adapter (payment gateway API v2.1.0).

Creation needs no network call: the signed checkout URL is built locally and
the customer is redirected to it. VNPAY then reports the outcome through a
signed GET (IPN and browser return share the same parameter set).

Amounts travel as integer VND multiplied by 100.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from app.config import settings
from app.models.enums import PaymentOutcome, Provider, ReceiptStatus, VerificationFailure
from app.providers.base import (
    CallbackPayload,
    CreatePaymentResult,
    PaymentProvider,
    PaymentRequest,
    VerificationResult,
)
from app.providers.signature import VNPAY_SCHEME, canonicalize_vnpay, sign, verify

logger = logging.getLogger("payment_gateway.providers.vnpay")

VNPAY_VERSION = "2.1.0"
VNPAY_TZ = timezone(timedelta(hours=7))  # vnp_CreateDate is Vietnam local time
DATE_FORMAT = "%Y%m%d%H%M%S"

SUCCESS_CODE = "00"
# Documented vnp_ResponseCode values that mean the customer was not charged
FAILURE_CODES = frozenset({"09", "10", "11", "12", "13", "24", "51", "65", "75", "79", "99"})
# vnp_TransactionStatus "02": transaction error
FAILED_TRANSACTION_STATUSES = frozenset({"02"})

IPN_RESPONSES = {
    ReceiptStatus.APPLIED: ("00", "Confirm Success"),
    ReceiptStatus.PENDING: ("00", "Confirm Success"),
    ReceiptStatus.IGNORED: ("00", "Confirm Success"),
    ReceiptStatus.DUPLICATE: ("02", "Order already confirmed"),
    ReceiptStatus.ANOMALY: ("02", "Order already confirmed"),
    ReceiptStatus.AMOUNT_MISMATCH: ("04", "Invalid amount"),
    ReceiptStatus.NOT_FOUND: ("01", "Order not found"),
    ReceiptStatus.REJECTED: ("97", "Invalid signature"),
}


def to_vnpay_amount(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_vnpay_amount(raw: Any) -> Decimal:
    return Decimal(str(raw)) / 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VnpayProvider(PaymentProvider):
    """Builds signed VNPAY checkout URLs and verifies VNPAY IPN/return calls."""

    supported_currencies = frozenset({"VND"})

    def __init__(
        self,
        tmn_code: Optional[str] = None,
        hash_secret: Optional[str] = None,
        payment_url: Optional[str] = None,
        return_url: Optional[str] = None,
        expire_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._tmn_code = tmn_code if tmn_code is not None else settings.vnpay_tmn_code
        self._hash_secret = hash_secret if hash_secret is not None else settings.vnpay_hash_secret
        self._payment_url = payment_url or settings.vnpay_url
        self._return_url = return_url or settings.vnpay_return_url
        self._expire = timedelta(
            minutes=expire_minutes if expire_minutes is not None else settings.payment_attempt_ttl_minutes
        )
        self._clock = clock

    @property
    def name(self) -> str:
        return Provider.VNPAY.value

    def build_params(self, request: PaymentRequest) -> dict[str, str]:
        """Unsigned vnp_* parameter set for a checkout request."""
        now = self._clock().astimezone(VNPAY_TZ)
        return {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self._tmn_code,
            "vnp_Amount": str(to_vnpay_amount(request.amount)),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": request.provider_ref,
            "vnp_OrderInfo": request.description or f"Payment for order {request.order_id}",
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": request.return_url or self._return_url,
            "vnp_IpAddr": request.client_ip,
            "vnp_CreateDate": now.strftime(DATE_FORMAT),
            "vnp_ExpireDate": (now + self._expire).strftime(DATE_FORMAT),
        }

    async def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        params = self.build_params(request)
        secure_hash = sign(params, self._hash_secret, VNPAY_SCHEME)
        query = f"{canonicalize_vnpay(params)}&vnp_SecureHash={secure_hash}"

        return CreatePaymentResult(
            provider_ref=request.provider_ref,
            redirect_url=f"{self._payment_url}?{query}",
            raw={"vnp_CreateDate": params["vnp_CreateDate"], "vnp_ExpireDate": params["vnp_ExpireDate"]},
        )

    def verify_callback(self, payload: CallbackPayload) -> VerificationResult:
        try:
            params = payload.parameters()
        except ValueError as e:
            return VerificationResult.rejected(VerificationFailure.MALFORMED, f"Unparseable payload: {e}")

        provided = params.get("vnp_SecureHash")
        if not provided:
            return VerificationResult.rejected(
                VerificationFailure.UNSIGNED,
                "Missing vnp_SecureHash",
                provider_ref=params.get("vnp_TxnRef"),
                evidence=params,
            )

        if not verify(params, provided, self._hash_secret, VNPAY_SCHEME):
            return VerificationResult.rejected(
                VerificationFailure.FORGED,
                "vnp_SecureHash mismatch",
                provider_ref=params.get("vnp_TxnRef"),
                evidence=params,
            )

        txn_ref = params.get("vnp_TxnRef")
        response_code = params.get("vnp_ResponseCode")
        if not txn_ref or not response_code:
            return VerificationResult.rejected(
                VerificationFailure.MALFORMED, "Missing vnp_TxnRef or vnp_ResponseCode", evidence=params
            )
        try:
            amount = from_vnpay_amount(params.get("vnp_Amount"))
        except (InvalidOperation, TypeError, ValueError):
            return VerificationResult.rejected(
                VerificationFailure.MALFORMED, f"Invalid vnp_Amount: {params.get('vnp_Amount')!r}", evidence=params
            )

        outcome = self.classify(response_code, params.get("vnp_TransactionStatus"))
        return VerificationResult(
            verified=True,
            provider_ref=txn_ref,
            outcome=outcome,
            amount=amount,
            message=f"vnp_ResponseCode={response_code}",
            provider_transaction_id=params.get("vnp_TransactionNo") or None,
            evidence=params,
        )

    @staticmethod
    def classify(response_code: str, transaction_status: Optional[str] = None) -> PaymentOutcome:
        """
        Map VNPAY codes to an outcome.

        Anything not explicitly a success or a documented failure (notably
        "07", deducted but flagged as suspicious) stays pending for review
        rather than being guessed either way.
        """
        if response_code == SUCCESS_CODE and transaction_status in (None, "", SUCCESS_CODE):
            return PaymentOutcome.SUCCEEDED
        if response_code in FAILURE_CODES or transaction_status in FAILED_TRANSACTION_STATUSES:
            return PaymentOutcome.FAILED
        return PaymentOutcome.PENDING

    def acknowledge(self, status: ReceiptStatus) -> dict[str, Any]:
        code, message = IPN_RESPONSES.get(status, ("99", "Unknown error"))
        return {"RspCode": code, "Message": message}
