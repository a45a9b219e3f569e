"""
Abstract payment provider interface.

Every gateway (VNPAY, MOMO, STRIPE, MANUAL) implements this interface. An
adapter is a pure translator: generic request -> signed provider request, and
signed provider callback -> generic verification result. Adapters never touch
the database; the orchestrator owns all persistence and state changes.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import parse_qsl

from app.models.enums import PaymentOutcome, ReceiptStatus, VerificationFailure


@dataclass
class PaymentRequest:
    """Request to open a payment with a gateway. Amounts are in major units."""

    provider_ref: str
    order_id: str
    amount: Decimal
    currency: str  # ISO 4217
    return_url: str = ""
    cancel_url: Optional[str] = None
    description: str = ""
    client_ip: str = "127.0.0.1"
    metadata: Optional[dict] = None


@dataclass
class CreatePaymentResult:
    """Gateway accepted the request."""

    provider_ref: str
    redirect_url: Optional[str]
    settled: bool = False  # True when the provider confirms on creation (MANUAL)
    provider_transaction_id: Optional[str] = None
    raw: Optional[dict] = None


@dataclass
class CallbackPayload:
    """
    An inbound callback exactly as it arrived.

    Adapters decide which part carries the signed data: VNPAY signs query
    parameters, MOMO a JSON body, STRIPE the raw body plus a header.
    """

    method: str = "POST"
    query: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)  # lowercase keys

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def parameters(self) -> dict[str, Any]:
        """
        Query parameters for browser redirects, otherwise the decoded body.

        Raises:
            ValueError: The body is neither JSON nor form data.
        """
        if self.query and (self.method.upper() == "GET" or not self.body):
            return dict(self.query)
        if not self.body:
            return {}
        text = self.body.decode("utf-8")
        content_type = self.header("content-type") or ""
        if "json" in content_type or text.lstrip().startswith("{"):
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("callback body is not a JSON object")
            return data
        return dict(parse_qsl(text, keep_blank_values=True, strict_parsing=True))


@dataclass
class VerificationResult:
    """Outcome of checking an inbound callback."""

    verified: bool
    provider_ref: Optional[str] = None
    outcome: Optional[PaymentOutcome] = None
    amount: Optional[Decimal] = None
    failure: Optional[VerificationFailure] = None
    message: str = ""
    provider_transaction_id: Optional[str] = None
    evidence: Optional[dict] = None

    @classmethod
    def rejected(
        cls,
        failure: VerificationFailure,
        message: str,
        provider_ref: Optional[str] = None,
        evidence: Optional[dict] = None,
    ) -> "VerificationResult":
        return cls(
            verified=False,
            failure=failure,
            message=message,
            provider_ref=provider_ref,
            evidence=evidence,
        )


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    #: Currencies the gateway settles in; empty means any.
    supported_currencies: frozenset[str] = frozenset()
    #: Whether the customer is redirected to the gateway (needs a return URL).
    redirects_customer: bool = True
    #: Only elevated callers may open payments with this provider.
    requires_elevated_role: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. 'VNPAY')."""
        ...

    @abstractmethod
    async def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        """
        Open a payment with the gateway.

        Raises:
            ProviderRejected: The gateway refused the request.
            ProviderUnavailable: Network failure talking to the gateway.
        """
        ...

    @abstractmethod
    def verify_callback(self, payload: CallbackPayload) -> VerificationResult:
        """
        Authenticate a callback and translate it to a generic result.

        Never raises for bad input: unparseable, unsigned and forged payloads
        come back as unverified results with the matching failure category.
        """
        ...

    def acknowledge(self, status: ReceiptStatus) -> dict[str, Any]:
        """Body returned to the gateway after a callback was handled."""
        return {"received": True, "status": status.value}
