"""
Manual provider for payments settled outside any gateway (cash at the
counter, bank transfer reconciled by staff).

Only staff may open one, and it is confirmed the moment it is recorded.
There is no gateway behind it, so there are no callbacks to trust.
"""

from app.models.enums import Provider, VerificationFailure
from app.providers.base import (
    CallbackPayload,
    CreatePaymentResult,
    PaymentProvider,
    PaymentRequest,
    VerificationResult,
)


class ManualProvider(PaymentProvider):
    redirects_customer = False
    requires_elevated_role = True

    @property
    def name(self) -> str:
        return Provider.MANUAL.value

    async def create_payment(self, request: PaymentRequest) -> CreatePaymentResult:
        return CreatePaymentResult(
            provider_ref=request.provider_ref,
            redirect_url=None,
            settled=True,
            raw={"payment_type": "manual"},
        )

    def verify_callback(self, payload: CallbackPayload) -> VerificationResult:
        return VerificationResult.rejected(VerificationFailure.UNSIGNED, "Manual payments accept no callbacks")
