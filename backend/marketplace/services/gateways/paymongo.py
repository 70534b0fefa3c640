"""PayMongo: manual-capture payment intents. No payout API."""

from typing import Any

from marketplace.core.config import settings
from marketplace.services.gateways.base import GatewayResult
from marketplace.services.gateways.http import HttpGateway


class PayMongoGateway(HttpGateway):
    name = "paymongo"
    supports_holds = True

    def __init__(self, secret_key: str | None = None, base_url: str | None = None) -> None:
        super().__init__(base_url or settings.paymongo_api_base_url)
        self.secret_key = settings.paymongo_secret_key if secret_key is None else secret_key

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def webhook_secret(self) -> str:
        return settings.paymongo_webhook_secret

    def _auth(self) -> dict[str, Any]:
        return {"auth": (self.secret_key, "")}

    def _error_details(self, data: dict[str, Any]) -> tuple[str, str | None]:
        errors = data.get("errors") or [{}]
        first = errors[0] if isinstance(errors, list) and errors else {}
        return str(first.get("detail", "")), first.get("code")

    @staticmethod
    def _attributes(data: dict[str, Any]) -> dict[str, Any]:
        return (data.get("data") or {}).get("attributes") or {}

    def _ok(self, data: dict[str, Any], message: str, reference_id: str | None = None) -> GatewayResult:
        attrs = self._attributes(data)
        return GatewayResult(
            success=True,
            message=message,
            reference_id=reference_id or (data.get("data") or {}).get("id"),
            status=attrs.get("status"),
            raw=data,
        )

    async def create_hold(
        self, amount: int, currency: str, client_ref: str, description: str,
    ) -> GatewayResult:
        resp = await self._request(
            "POST",
            "/payment_intents",
            json={
                "data": {
                    "attributes": {
                        "amount": amount,
                        "currency": currency,
                        "capture_type": "manual",
                        "payment_method_allowed": ["card"],
                        "description": description,
                        "metadata": {"client_ref": client_ref},
                    }
                }
            },
        )
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return self._ok(data, "Payment hold created")

    async def capture(self, hold_id: str, amount: int, currency: str) -> GatewayResult:
        resp = await self._request(
            "POST",
            f"/payment_intents/{hold_id}/capture",
            json={"data": {"attributes": {"amount": amount}}},
        )
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        payments = self._attributes(data).get("payments") or []
        charge_id = payments[0].get("id") if payments else None
        return self._ok(data, "Payment captured", reference_id=charge_id)

    async def release(self, hold_id: str) -> GatewayResult:
        resp = await self._request("GET", f"/payment_intents/{hold_id}")
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)

        attrs = self._attributes(data)
        if attrs.get("status") == "succeeded":
            payments = attrs.get("payments") or []
            if payments:
                return await self.refund(payments[0]["id"], amount=attrs.get("amount"))

        resp = await self._request("POST", f"/payment_intents/{hold_id}/cancel")
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return self._ok(data, "Payment hold voided")

    async def refund(
        self, charge_id: str, amount: int | None = None, reason: str | None = None,
    ) -> GatewayResult:
        attributes: dict[str, Any] = {
            "payment_id": charge_id,
            "reason": "requested_by_customer",
            "notes": reason or "",
        }
        if amount is not None:
            attributes["amount"] = amount
        resp = await self._request("POST", "/refunds", json={"data": {"attributes": attributes}})
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return self._ok(data, "Refund issued")
