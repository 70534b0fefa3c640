"""Xendit: manual-capture payment requests and disbursements (payouts)."""

from decimal import Decimal
from typing import Any

from marketplace.core.config import settings
from marketplace.services.gateways.base import GatewayResult, PayoutStatusResult
from marketplace.services.gateways.http import HttpGateway

# Xendit amounts are major units; IDR has no minor unit
_ZERO_DECIMAL = {"IDR"}

_DISBURSEMENT_STATES = {
    "COMPLETED": "completed",
    "FAILED": "failed",
    "PENDING": "processing",
}


def to_major_units(amount: int, currency: str) -> Decimal | int:
    if currency.upper() in _ZERO_DECIMAL:
        return amount
    return Decimal(amount) / 100


class XenditGateway(HttpGateway):
    name = "xendit"
    supports_holds = True
    supports_payouts = True

    def __init__(self, secret_key: str | None = None, base_url: str | None = None) -> None:
        super().__init__(base_url or settings.xendit_api_base_url)
        self.secret_key = settings.xendit_secret_key if secret_key is None else secret_key

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def webhook_secret(self) -> str:
        return settings.xendit_webhook_secret

    def _auth(self) -> dict[str, Any]:
        return {"auth": (self.secret_key, "")}

    def _ok(self, data: dict[str, Any], message: str) -> GatewayResult:
        return GatewayResult(
            success=True,
            message=message,
            reference_id=data.get("id"),
            status=data.get("status"),
            raw=data,
        )

    async def create_hold(
        self, amount: int, currency: str, client_ref: str, description: str,
    ) -> GatewayResult:
        resp = await self._request(
            "POST",
            "/payment_requests",
            json={
                "reference_id": client_ref,
                "amount": float(to_major_units(amount, currency)),
                "currency": currency,
                "capture_method": "MANUAL",
                "description": description,
            },
        )
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return self._ok(data, "Payment hold created")

    async def capture(self, hold_id: str, amount: int, currency: str) -> GatewayResult:
        resp = await self._request(
            "POST",
            f"/payment_requests/{hold_id}/captures",
            json={"capture_amount": float(to_major_units(amount, currency))},
        )
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return self._ok(data, "Payment captured")

    async def release(self, hold_id: str) -> GatewayResult:
        resp = await self._request("GET", f"/payment_requests/{hold_id}")
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)

        if data.get("status") == "SUCCEEDED":
            return await self.refund(hold_id)

        resp = await self._request("POST", f"/payment_requests/{hold_id}/expire")
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return self._ok(data, "Payment hold voided")

    async def refund(
        self, charge_id: str, amount: int | None = None, reason: str | None = None,
    ) -> GatewayResult:
        body: dict[str, Any] = {
            "payment_request_id": charge_id,
            "reason": "REQUESTED_BY_CUSTOMER",
        }
        if reason:
            body["metadata"] = {"reason": reason}
        if amount is not None:
            body["amount"] = amount
        resp = await self._request("POST", "/refunds", json=body)
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return self._ok(data, "Refund issued")

    async def initiate_payout(
        self, amount: int, currency: str, destination: dict[str, Any], reference: str,
    ) -> GatewayResult:
        resp = await self._request(
            "POST",
            "/disbursements",
            json={
                "external_id": reference,
                "amount": float(to_major_units(amount, currency)),
                "bank_code": destination.get("bank_code"),
                "account_holder_name": destination.get("account_holder_name"),
                "account_number": destination.get("account_number"),
                "description": f"Escrow payout {reference}",
            },
            headers={"X-IDEMPOTENCY-KEY": reference},
        )
        data = self._json(resp)
        if resp.is_error:
            return self._declined(resp, data)
        return self._ok(data, "Disbursement created")

    async def get_payout_status(self, payout_id: str) -> PayoutStatusResult:
        resp = await self._request("GET", f"/disbursements/{payout_id}")
        data = self._json(resp)
        if resp.is_error:
            message, _ = self._error_details(data)
            return PayoutStatusResult(state="processing", reference_id=payout_id, failure_reason=message, raw=data)
        return PayoutStatusResult(
            state=_DISBURSEMENT_STATES.get(data.get("status", ""), "processing"),
            reference_id=data.get("id", payout_id),
            failure_reason=data.get("failure_code"),
            raw=data,
        )
