"""
Create-request validation with categorized rejection reasons.

Before a transaction is recorded, we verify:
  1. The provider is registered
  2. The amount is positive and representable in the currency
  3. The currency is a 3-letter code the provider settles in
  4. Redirect providers have somewhere to send the customer back to

Each check returns a structured result so the orchestrator can report the
rejection category to the caller.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from app.models.enums import RejectionReason
from app.providers.amounts import minor_unit_exponent
from app.providers.base import PaymentProvider

# Largest value the transactions.amount column (NUMERIC(18, 2)) can hold
MAX_AMOUNT = Decimal("9999999999999999.99")


@dataclass
class ValidationResult:
    """Result of a create-request check."""

    valid: bool
    reason: Optional[RejectionReason] = None
    message: str = ""


def check_create_request(
    provider: Optional[PaymentProvider],
    provider_name: Optional[str],
    amount: Optional[Decimal],
    currency: Optional[str],
    return_url: Optional[str] = None,
) -> ValidationResult:
    """
    Check whether a create request can be handed to a provider.

    Args:
        provider: Adapter resolved from the registry (None if unknown).
        provider_name: Name the caller asked for, for the error message.
        amount: Amount in major units.
        currency: ISO 4217 code, upper-case.
        return_url: Where the gateway sends the customer afterwards.

    Returns:
        ValidationResult indicating pass/fail with categorized reason.
    """
    if provider is None:
        return ValidationResult(
            valid=False,
            reason=RejectionReason.UNKNOWN_PROVIDER,
            message=f"Payment provider not supported: {provider_name}",
        )

    if amount is None or not amount.is_finite() or amount <= 0:
        return ValidationResult(
            valid=False,
            reason=RejectionReason.INVALID_AMOUNT,
            message=f"Invalid amount: {amount}",
        )

    if amount > MAX_AMOUNT:
        return ValidationResult(
            valid=False,
            reason=RejectionReason.INVALID_AMOUNT,
            message=f"Amount {amount} exceeds the largest storable amount",
        )

    if not currency or len(currency) != 3 or not currency.isalpha():
        return ValidationResult(
            valid=False,
            reason=RejectionReason.INVALID_CURRENCY,
            message=f"Invalid currency code: {currency}",
        )

    # More precision than the currency's minor unit cannot be charged
    smallest_unit = Decimal(1).scaleb(-minor_unit_exponent(currency))
    if amount != amount.quantize(smallest_unit):
        return ValidationResult(
            valid=False,
            reason=RejectionReason.INVALID_AMOUNT,
            message=f"Amount {amount} has more decimals than {currency} allows",
        )

    if provider.supported_currencies and currency not in provider.supported_currencies:
        return ValidationResult(
            valid=False,
            reason=RejectionReason.UNSUPPORTED_CURRENCY,
            message=f"{provider.name} does not accept {currency}",
        )

    if provider.redirects_customer and not return_url:
        return ValidationResult(
            valid=False,
            reason=RejectionReason.MISSING_RETURN_URL,
            message=f"{provider.name} requires a return URL",
        )

    return ValidationResult(valid=True)
