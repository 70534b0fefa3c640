"""PayPal: Payouts API only (OAuth client-credentials)."""

import logging
from typing import Any

import httpx
from tenacity import RetryError

from marketplace.core.config import settings
from marketplace.services.gateways.base import GatewayResult, GatewayTransportError, PayoutStatusResult
from marketplace.services.gateways.http import HttpGateway, _RetryableStatus

logger = logging.getLogger(__name__)

_ZERO_DECIMAL = {"IDR"}

_ITEM_STATES = {
    "SUCCESS": "completed",
    "FAILED": "failed",
    "RETURNED": "failed",
    "BLOCKED": "failed",
    "REFUNDED": "failed",
    "REVERSED": "failed",
    "DENIED": "failed",
    "UNCLAIMED": "processing",
    "PENDING": "processing",
    "ONHOLD": "processing",
}


def _format_amount(amount: int, currency: str) -> str:
    if currency.upper() in _ZERO_DECIMAL:
        return str(amount)
    return f"{amount // 100}.{amount % 100:02d}"


class PayPalGateway(HttpGateway):
    name = "paypal"
    supports_payouts = True

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
    ) -> None:
        super().__init__(base_url or settings.paypal_api_base_url)
        self.client_id = settings.paypal_client_id if client_id is None else client_id
        self.client_secret = settings.paypal_client_secret if client_secret is None else client_secret
        self._access_token: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def webhook_secret(self) -> str:
        return settings.paypal_webhook_secret

    def _auth(self) -> dict[str, Any]:
        if not self._access_token:
            return {}
        return {"headers": {"Authorization": f"Bearer {self._access_token}"}}

    def _error_details(self, data: dict[str, Any]) -> tuple[str, str | None]:
        return str(data.get("message") or data.get("error_description") or ""), data.get("name")

    async def _ensure_token(self) -> None:
        if self._access_token:
            return
        self._require_configured()
        try:
            resp = await self._send(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except (_RetryableStatus, httpx.HTTPError, RetryError) as exc:
            raise GatewayTransportError(self.name, f"token request failed: {exc}") from exc
        data = self._json(resp)
        if resp.is_error:
            message, _ = self._error_details(data)
            logger.warning("PayPal token request failed: %s", message)
            self._access_token = None
            return
        self._access_token = data.get("access_token")

    async def initiate_payout(
        self, amount: int, currency: str, destination: dict[str, Any], reference: str,
    ) -> GatewayResult:
        await self._ensure_token()
        if not self._access_token:
            return GatewayResult(success=False, message="PayPal authentication failed", code="auth_failed")

        receiver = destination.get("email") or destination.get("paypal_email")
        resp = await self._request(
            "POST",
            "/v1/payments/payouts",
            json={
                "sender_batch_header": {
                    "sender_batch_id": reference,
                    "email_subject": "You have a payout",
                },
                "items": [
                    {
                        "recipient_type": "EMAIL",
                        "amount": {"value": _format_amount(amount, currency), "currency": currency},
                        "receiver": receiver,
                        "sender_item_id": reference,
                    }
                ],
            },
        )
        data = self._json(resp)
        if resp.status_code == 401:
            self._access_token = None
        if resp.is_error:
            return self._declined(resp, data)
        header = data.get("batch_header") or {}
        return GatewayResult(
            success=True,
            message="Payout batch created",
            reference_id=header.get("payout_batch_id"),
            status=header.get("batch_status"),
            raw=data,
        )

    async def get_payout_status(self, payout_id: str) -> PayoutStatusResult:
        await self._ensure_token()
        resp = await self._request("GET", f"/v1/payments/payouts/{payout_id}")
        data = self._json(resp)
        if resp.is_error:
            message, _ = self._error_details(data)
            return PayoutStatusResult(state="processing", reference_id=payout_id, failure_reason=message, raw=data)

        items = data.get("items") or []
        item_status = (items[0].get("transaction_status") if items else None) or ""
        if not item_status:
            batch_status = (data.get("batch_header") or {}).get("batch_status", "")
            state = "failed" if batch_status in ("DENIED", "CANCELED") else "processing"
        else:
            state = _ITEM_STATES.get(item_status, "processing")
        return PayoutStatusResult(
            state=state,
            reference_id=payout_id,
            failure_reason=(items[0].get("errors") or {}).get("message") if items else None,
            raw=data,
        )
