"""
Immutable provider registry.

Built once at startup and handed to the orchestrator's constructor. Adding a
gateway means adding an adapter here; the orchestrator never changes.
"""

from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Optional

from app.providers.base import PaymentProvider
from app.providers.manual import ManualProvider
from app.providers.momo import MomoProvider
from app.providers.stripe_checkout import StripeCheckoutProvider
from app.providers.vnpay import VnpayProvider


class ProviderRegistry(Mapping[str, PaymentProvider]):
    """Read-only mapping of upper-case provider name -> adapter."""

    def __init__(self, providers: Iterable[PaymentProvider]):
        table: dict[str, PaymentProvider] = {}
        for provider in providers:
            key = provider.name.upper()
            if key in table:
                raise ValueError(f"Duplicate provider registered: {key}")
            table[key] = provider
        self._providers = MappingProxyType(table)

    def __getitem__(self, name: str) -> PaymentProvider:
        return self._providers[name.upper()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.upper() in self._providers

    def find(self, name: Optional[str]) -> Optional[PaymentProvider]:
        if not name:
            return None
        return self._providers.get(name.upper())


def build_default_registry() -> ProviderRegistry:
    """Registry with every production adapter, configured from settings."""
    return ProviderRegistry([VnpayProvider(), MomoProvider(), StripeCheckoutProvider(), ManualProvider()])
