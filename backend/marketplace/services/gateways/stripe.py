"""Stripe: manual-capture PaymentIntents for holds, Connect payouts."""

from typing import Any

from marketplace.core.config import settings
from marketplace.services.gateways.base import GatewayResult, PayoutStatusResult
from marketplace.services.gateways.http import HttpGateway

_PAYOUT_STATES = {
    "paid": "completed",
    "failed": "failed",
    "canceled": "failed",
    "pending": "processing",
    "in_transit": "processing",
}


class StripeGateway(HttpGateway):
    name = "stripe"
    supports_holds = True
    supports_payouts = True

    def __init__(self, secret_key: str | None = None, base_url: str | None = None) -> None:
        super().__init__(base_url or settings.stripe_api_base_url)
        self.secret_key = settings.stripe_secret_key if secret_key is None else secret_key

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def webhook_secret(self) -> str:
        return settings.stripe_webhook_secret

    def _auth(self) -> dict[str, Any]:
        return {"headers": {"Authorization": f"Bearer {self.secret_key}"}}

    def _error_details(self, data: dict[str, Any]) -> tuple[str, str | None]:
        err = data.get("error") or {}
        return str(err.get("message", "")), err.get("decline_code") or err.get("code")

    async def create_hold(
        self, amount: int, currency: str, client_ref: str, description: str,
    ) -> GatewayResult:
        resp = await self._request(
            "POST",
            "/payment_intents",
            data={
                "amount": amount,
                "currency": currency.lower(),
                "capture_method": "manual",
                "description": description,
                "metadata[client_ref]": client_ref,
            },
        )
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return GatewayResult(
            success=True,
            message="Payment hold created",
            reference_id=data.get("id"),
            status=data.get("status"),
            raw=data,
        )

    async def capture(self, hold_id: str, amount: int, currency: str) -> GatewayResult:
        resp = await self._request(
            "POST",
            f"/payment_intents/{hold_id}/capture",
            data={"amount_to_capture": amount},
        )
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return GatewayResult(
            success=True,
            message="Payment captured",
            reference_id=data.get("latest_charge") or data.get("id"),
            status=data.get("status"),
            raw=data,
        )

    async def release(self, hold_id: str) -> GatewayResult:
        resp = await self._request("GET", f"/payment_intents/{hold_id}")
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)

        if data.get("status") == "succeeded":
            return await self.refund(hold_id)

        resp = await self._request("POST", f"/payment_intents/{hold_id}/cancel")
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return GatewayResult(
            success=True,
            message="Payment hold voided",
            reference_id=data.get("id"),
            status=data.get("status"),
            raw=data,
        )

    async def refund(
        self, charge_id: str, amount: int | None = None, reason: str | None = None,
    ) -> GatewayResult:
        key = "payment_intent" if charge_id.startswith("pi_") else "charge"
        form: dict[str, Any] = {key: charge_id}
        if amount is not None:
            form["amount"] = amount
        if reason:
            form["metadata[reason]"] = reason
        resp = await self._request("POST", "/refunds", data=form)
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return GatewayResult(
            success=data.get("status") != "failed",
            message="Refund issued" if data.get("status") != "failed" else "Refund failed",
            reference_id=data.get("id"),
            status=data.get("status"),
            raw=data,
        )

    async def initiate_payout(
        self, amount: int, currency: str, destination: dict[str, Any], reference: str,
    ) -> GatewayResult:
        account = destination.get("account_id")
        headers = {"Stripe-Account": account} if account else {}
        form: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata[reference]": reference,
        }
        if destination.get("external_account"):
            form["destination"] = destination["external_account"]
        resp = await self._request("POST", "/payouts", data=form, headers=headers)
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return GatewayResult(
            success=True,
            message="Payout created",
            reference_id=data.get("id"),
            status=data.get("status"),
            raw=data,
        )

    async def get_payout_status(self, payout_id: str) -> PayoutStatusResult:
        resp = await self._request("GET", f"/payouts/{payout_id}")
        data = self._json(resp)
        if resp.is_error:
            message, _ = self._error_details(data)
            return PayoutStatusResult(state="processing", reference_id=payout_id, failure_reason=message, raw=data)
        return PayoutStatusResult(
            state=_PAYOUT_STATES.get(data.get("status", ""), "processing"),
            reference_id=data.get("id", payout_id),
            failure_reason=data.get("failure_message"),
            raw=data,
        )
