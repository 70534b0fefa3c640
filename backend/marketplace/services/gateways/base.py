"""Payment gateway adapter contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from marketplace.services.escrow.errors import ConfigurationError


class GatewayTransportError(Exception):
    """Network failure, timeout or 5xx from a provider after the retry budget."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


@dataclass
class GatewayResult:
    """Outcome of one gateway call. Expected declines have ``success=False``."""

    success: bool
    message: str = ""
    code: str | None = None
    reference_id: str | None = None
    status: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class PayoutStatusResult:
    """Normalised payout state: ``completed``, ``failed`` or ``processing``."""

    state: str
    reference_id: str | None = None
    failure_reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class GatewayAdapter(ABC):
    """One instance per provider, built once by the registry.

    Operations a provider does not offer raise ConfigurationError; they never
    pretend to succeed.
    """

    name: str = ""
    supports_holds: bool = False
    supports_payouts: bool = False

    @property
    @abstractmethod
    def configured(self) -> bool:
        """True when the credentials needed for API calls are present."""

    @property
    def webhook_secret(self) -> str:
        return ""

    def _unsupported(self, operation: str) -> ConfigurationError:
        return ConfigurationError(f"{self.name} does not support {operation}")

    async def create_hold(
        self, amount: int, currency: str, client_ref: str, description: str,
    ) -> GatewayResult:
        raise self._unsupported("payment holds")

    async def capture(self, hold_id: str, amount: int, currency: str) -> GatewayResult:
        raise self._unsupported("capture")

    async def release(self, hold_id: str) -> GatewayResult:
        """Void an uncaptured hold, or fully refund a captured one."""
        raise self._unsupported("release")

    async def refund(
        self, charge_id: str, amount: int | None = None, reason: str | None = None,
    ) -> GatewayResult:
        raise self._unsupported("refunds")

    async def initiate_payout(
        self, amount: int, currency: str, destination: dict[str, Any], reference: str,
    ) -> GatewayResult:
        raise self._unsupported("payouts")

    async def get_payout_status(self, payout_id: str) -> PayoutStatusResult:
        raise self._unsupported("payout status")
