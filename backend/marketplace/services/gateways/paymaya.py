"""PayMaya: webhook verification only; no API operations are wired."""

from marketplace.core.config import settings
from marketplace.services.gateways.base import GatewayAdapter


class PayMayaGateway(GatewayAdapter):
    name = "paymaya"

    @property
    def configured(self) -> bool:
        return bool(settings.paymaya_secret_key)

    @property
    def webhook_secret(self) -> str:
        return settings.paymaya_webhook_secret
