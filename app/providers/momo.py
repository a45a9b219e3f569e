"""
MoMo e-wallet adapter (API v2, captureWallet / payWithMethod).

Creation POSTs a signed JSON request to MoMo and returns the payUrl MoMo
hands back. MoMo reports the outcome through a signed IPN POST (JSON body)
and a browser redirect carrying the same fields as query parameters.

Amounts travel as integer VND.
"""

import base64
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from app.config import settings
from app.engine.errors import ProviderRejected, ProviderUnavailable
from app.models.enums import PaymentOutcome, Provider, VerificationFailure
from app.providers.base import (
    CallbackPayload,
    CreatePaymentResult,
    PaymentProvider,
    PaymentRequest,
    VerificationResult,
)
from app.providers.signature import MOMO_CALLBACK_SCHEME, MOMO_CREATE_SCHEME, sign, verify

logger = logging.getLogger("payment_gateway.providers.momo")

SUCCESS_CODE = 0
# Initiated, processing, or authorized and awaiting capture
PENDING_CODES = frozenset({1000, 7000, 7002, 9000})
REQUEST_TYPE = "payWithMethod"


def encode_extra_data(metadata: Optional[dict]) -> str:
    if not metadata:
        return ""
    return base64.b64encode(json.dumps(metadata, sort_keys=True).encode("utf-8")).decode("ascii")


class MomoProvider(PaymentProvider):
    """Talks to the MoMo create endpoint and verifies MoMo IPN/redirect calls."""

    supported_currencies = frozenset({"VND"})

    def __init__(
        self,
        partner_code: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        ipn_url: Optional[str] = None,
        redirect_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._partner_code = partner_code if partner_code is not None else settings.momo_partner_code
        self._access_key = access_key if access_key is not None else settings.momo_access_key
        self._secret_key = secret_key if secret_key is not None else settings.momo_secret_key
        self._endpoint = endpoint or settings.momo_endpoint
        self._ipn_url = ipn_url or settings.momo_ipn_url
        self._redirect_url = redirect_url or settings.momo_redirect_url
        self._timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self._transport = transport

    @property
    def name(self) -> str:
        return Provider.MOMO.value

    def build_request_body(self, request: PaymentRequest) -> dict:
        body = {
            "partnerCode": self._partner_code,
            "requestId": request.provider_ref,
            "amount": int(request.amount),
            "orderId": request.provider_ref,
            "orderInfo": request.description or f"Payment for order {request.order_id}",
            "redirectUrl": request.return_url or self._redirect_url,
            "ipnUrl": self._ipn_url,
            "requestType": REQUEST_TYPE,
            "extraData": encode_extra_data(request.metadata),
            "lang": "vi",
            "autoCapture": True,
        }
        body["signature"] = sign({**body, "accessKey": self._access_key}, self._secret_key, MOMO_CREATE_SCHEME)
        return body

    async def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        body = self.build_request_body(request)

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._endpoint, json=body)
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"MoMo timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"MoMo unreachable: {e}") from e

        if response.status_code >= 500:
            raise ProviderUnavailable(f"MoMo returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable(f"MoMo returned a non-JSON response (HTTP {response.status_code})") from e
        if not isinstance(data, dict):
            raise ProviderUnavailable("MoMo returned an unexpected response shape")

        result_code = data.get("resultCode")
        if result_code != SUCCESS_CODE or not data.get("payUrl"):
            raise ProviderRejected(
                f"MoMo rejected the request (resultCode={result_code}): {data.get('message') or 'no message'}"
            )

        logger.info("MoMo accepted %s", request.provider_ref)
        return CreatePaymentResult(
            provider_ref=request.provider_ref,
            redirect_url=data["payUrl"],
            raw={key: data.get(key) for key in ("payUrl", "deeplink", "qrCodeUrl", "responseTime")},
        )

    def verify_callback(self, payload: CallbackPayload) -> VerificationResult:
        try:
            params = payload.parameters()
        except ValueError as e:
            return VerificationResult.rejected(VerificationFailure.MALFORMED, f"Unparseable payload: {e}")

        provided = params.get("signature")
        if not provided:
            return VerificationResult.rejected(
                VerificationFailure.UNSIGNED,
                "Missing signature",
                provider_ref=params.get("orderId"),
                evidence=params,
            )

        signed = {**params, "accessKey": self._access_key}
        if not verify(signed, provided, self._secret_key, MOMO_CALLBACK_SCHEME):
            return VerificationResult.rejected(
                VerificationFailure.FORGED,
                "signature mismatch",
                provider_ref=params.get("orderId"),
                evidence=params,
            )

        order_id = params.get("orderId")
        try:
            result_code = int(str(params.get("resultCode")))
            amount = Decimal(str(params.get("amount")))
        except (InvalidOperation, ValueError):
            return VerificationResult.rejected(
                VerificationFailure.MALFORMED, "Invalid resultCode or amount", evidence=params
            )
        if not order_id:
            return VerificationResult.rejected(VerificationFailure.MALFORMED, "Missing orderId", evidence=params)

        trans_id = params.get("transId")
        return VerificationResult(
            verified=True,
            provider_ref=order_id,
            outcome=self.classify(result_code),
            amount=amount,
            message=str(params.get("message") or f"resultCode={result_code}"),
            provider_transaction_id=str(trans_id) if trans_id not in (None, "") else None,
            evidence=params,
        )

    @staticmethod
    def classify(result_code: int) -> PaymentOutcome:
        if result_code == SUCCESS_CODE:
            return PaymentOutcome.SUCCEEDED
        if result_code in PENDING_CODES:
            return PaymentOutcome.PENDING
        return PaymentOutcome.FAILED
