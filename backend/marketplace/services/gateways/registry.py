"""Provider name -> adapter instance, resolved once at startup."""

import logging

from marketplace.core.config import settings
from marketplace.services.escrow.errors import ConfigurationError, EscrowValidationError
from marketplace.services.gateways.base import GatewayAdapter
from marketplace.services.gateways.paymaya import PayMayaGateway
from marketplace.services.gateways.paymongo import PayMongoGateway
from marketplace.services.gateways.paypal import PayPalGateway
from marketplace.services.gateways.stripe import StripeGateway
from marketplace.services.gateways.xendit import XenditGateway

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS: tuple[str, ...] = ("paymongo", "xendit", "stripe", "paypal", "paymaya")


class GatewayRegistry:
    def __init__(self, adapters: dict[str, GatewayAdapter], payout_provider: str | None = None) -> None:
        self._adapters = dict(adapters)
        self.payout_provider = payout_provider or settings.payout_provider

    def __contains__(self, name: str) -> bool:
        return name in self._adapters

    @property
    def names(self) -> list[str]:
        return list(self._adapters)

    def get(self, name: str) -> GatewayAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise EscrowValidationError(f"Unsupported payment provider: {name}")
        return adapter

    def for_holds(self, name: str) -> GatewayAdapter:
        adapter = self.get(name)
        if not adapter.supports_holds:
            raise EscrowValidationError(f"{name} cannot hold payments")
        return adapter

    def for_payouts(self, name: str | None = None) -> GatewayAdapter:
        provider = name or self.payout_provider
        adapter = self._adapters.get(provider)
        if adapter is None or not adapter.supports_payouts:
            raise ConfigurationError(f"Payout provider {provider} is not available")
        return adapter


def build_registry() -> GatewayRegistry:
    registry = GatewayRegistry(
        {
            "paymongo": PayMongoGateway(),
            "xendit": XenditGateway(),
            "stripe": StripeGateway(),
            "paypal": PayPalGateway(),
            "paymaya": PayMayaGateway(),
        }
    )
    configured = [name for name in registry.names if registry.get(name).configured]
    logger.info(
        "Gateway registry ready: configured=%s payout_provider=%s",
        configured, registry.payout_provider,
    )
    return registry
