"""
Stripe adapter (Checkout Sessions + signed webhooks).

Creation opens a Checkout Session through the official SDK and redirects the
customer to its hosted page. The outcome arrives as a webhook whose raw body
is signed in the Stripe-Signature header.

Amounts travel in the currency's minor unit (cents for USD, as-is for VND).
"""

import asyncio
import json
import logging
import time
from typing import Callable, Optional

import stripe

from app.config import settings
from app.engine.errors import ProviderRejected, ProviderUnavailable
from app.models.enums import PaymentOutcome, Provider, VerificationFailure
from app.providers.amounts import from_minor_units, to_minor_units
from app.providers.base import (
    CallbackPayload,
    CreatePaymentResult,
    PaymentProvider,
    PaymentRequest,
    VerificationResult,
)
from app.providers.signature import STRIPE_SCHEME, parse_stripe_signature_header, verify

logger = logging.getLogger("payment_gateway.providers.stripe")

SUCCEEDED_EVENTS = frozenset({"checkout.session.async_payment_succeeded"})
FAILED_EVENTS = frozenset({"checkout.session.async_payment_failed", "checkout.session.expired"})
COMPLETED_EVENT = "checkout.session.completed"


class StripeCheckoutProvider(PaymentProvider):
    """Creates Stripe Checkout Sessions and verifies Stripe webhooks."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self._webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self._tolerance = (
            tolerance_seconds if tolerance_seconds is not None else settings.stripe_webhook_tolerance_seconds
        )
        self._clock = clock

    @property
    def name(self) -> str:
        return Provider.STRIPE.value

    def _create_session(self, request: PaymentRequest):
        return stripe.checkout.Session.create(
            api_key=self._secret_key,
            idempotency_key=request.provider_ref,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": request.currency.lower(),
                        "product_data": {"name": request.description or f"Order {request.order_id}"},
                        "unit_amount": to_minor_units(request.amount, request.currency),
                    },
                    "quantity": 1,
                }
            ],
            success_url=request.return_url,
            cancel_url=request.cancel_url or request.return_url,
            client_reference_id=request.provider_ref,
            metadata={"provider_ref": request.provider_ref, "order_id": request.order_id},
        )

    async def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        # The SDK is blocking; the orchestrator bounds this call with its own timeout
        try:
            session = await asyncio.to_thread(self._create_session, request)
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            raise ProviderUnavailable(f"Stripe unavailable: {e.user_message or e}") from e
        except stripe.StripeError as e:
            raise ProviderRejected(f"Stripe rejected the request: {e.user_message or e}") from e

        if not session.url:
            raise ProviderRejected("Stripe returned a session without a checkout URL")

        logger.info("Stripe session %s opened for %s", session.id, request.provider_ref)
        return CreatePaymentResult(
            provider_ref=request.provider_ref,
            redirect_url=session.url,
            provider_transaction_id=session.id,
            raw={"session_id": session.id},
        )

    def verify_callback(self, payload: CallbackPayload) -> VerificationResult:
        try:
            body = payload.body.decode("utf-8")
            event = json.loads(body)
        except ValueError as e:
            return VerificationResult.rejected(VerificationFailure.MALFORMED, f"Unparseable webhook body: {e}")
        if not isinstance(event, dict):
            return VerificationResult.rejected(VerificationFailure.MALFORMED, "Webhook body is not a JSON object")

        timestamp, signatures = parse_stripe_signature_header(payload.header("stripe-signature"))
        if not timestamp or not signatures:
            return VerificationResult.rejected(VerificationFailure.UNSIGNED, "Missing Stripe-Signature t/v1")

        signed = {"timestamp": timestamp, "payload": body}
        if not any(verify(signed, candidate, self._webhook_secret, STRIPE_SCHEME) for candidate in signatures):
            return VerificationResult.rejected(
                VerificationFailure.FORGED, "No v1 signature matches", evidence={"id": event.get("id")}
            )

        try:
            age = abs(self._clock() - int(timestamp))
        except ValueError:
            return VerificationResult.rejected(VerificationFailure.MALFORMED, f"Invalid timestamp {timestamp!r}")
        if age > self._tolerance:
            return VerificationResult.rejected(
                VerificationFailure.FORGED,
                f"Timestamp outside tolerance ({age:.0f}s > {self._tolerance}s)",
                evidence={"id": event.get("id")},
            )

        event_type = event.get("type")
        data = event.get("data") or {}
        session = (data.get("object") or {}) if isinstance(data, dict) else data
        if not isinstance(session, dict):
            return VerificationResult.rejected(
                VerificationFailure.MALFORMED, f"{event_type} has no data.object", evidence={"id": event.get("id")}
            )
        outcome = self.classify(event_type, session.get("payment_status"))
        if outcome is PaymentOutcome.IGNORED:
            return VerificationResult(
                verified=True,
                outcome=outcome,
                message=f"Unhandled event type {event_type}",
                evidence={"id": event.get("id"), "type": event_type},
            )

        metadata = session.get("metadata")
        provider_ref = session.get("client_reference_id") or (
            metadata.get("provider_ref") if isinstance(metadata, dict) else None
        )
        if not provider_ref:
            return VerificationResult.rejected(
                VerificationFailure.MALFORMED, f"{event_type} carries no client_reference_id", evidence=event
            )

        amount = None
        if session.get("amount_total") is not None and session.get("currency"):
            amount = from_minor_units(session["amount_total"], session["currency"])

        return VerificationResult(
            verified=True,
            provider_ref=provider_ref,
            outcome=outcome,
            amount=amount,
            message=f"{event_type} ({session.get('payment_status') or 'n/a'})",
            provider_transaction_id=session.get("payment_intent") or session.get("id"),
            evidence=event,
        )

    @staticmethod
    def classify(event_type: Optional[str], payment_status: Optional[str]) -> PaymentOutcome:
        if event_type == COMPLETED_EVENT:
            # Delayed methods (bank debits) complete unpaid and settle later
            return PaymentOutcome.SUCCEEDED if payment_status == "paid" else PaymentOutcome.PENDING
        if event_type in SUCCEEDED_EVENTS:
            return PaymentOutcome.SUCCEEDED
        if event_type in FAILED_EVENTS:
            return PaymentOutcome.FAILED
        return PaymentOutcome.IGNORED
