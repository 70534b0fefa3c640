"""Shared async HTTP plumbing for gateway adapters (httpx + tenacity)."""

import logging
from typing import Any

import httpx
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace.core.config import settings
from marketplace.services.escrow.errors import ConfigurationError
from marketplace.services.gateways.base import GatewayAdapter, GatewayResult, GatewayTransportError

logger = logging.getLogger(__name__)


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


class HttpGateway(GatewayAdapter):
    """Base for REST providers.

    Transport failures (connection errors, timeouts, 5xx) are retried once,
    then raised as GatewayTransportError. 4xx responses are returned to the
    adapter, which turns them into declined GatewayResults.
    """

    base_url: str = ""

    def __init__(self, base_url: str | None = None) -> None:
        self.base_url = (base_url or self.base_url).rstrip("/")
        self.timeout = settings.gateway_timeout_seconds

    def _auth(self) -> dict[str, Any]:
        """Return httpx request kwargs carrying credentials (``auth`` / ``headers``)."""
        return {}

    def _require_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError(f"{self.name} API key is not configured")

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException, _RetryableStatus)),
        reraise=True,
    )
    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        auth_kwargs = self._auth()
        headers = {"Accept": "application/json", **auth_kwargs.pop("headers", {}), **kwargs.pop("headers", {})}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.request(
                method, f"{self.base_url}{path}", headers=headers, **auth_kwargs, **kwargs,
            )
        if resp.status_code >= 500:
            raise _RetryableStatus(resp)
        return resp

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute a provider call; the response may be a 4xx decline."""
        self._require_configured()
        try:
            return await self._send(method, path, **kwargs)
        except _RetryableStatus as exc:
            logger.warning("%s %s %s returned %s", self.name, method, path, exc.response.status_code)
            raise GatewayTransportError(self.name, str(exc)) from exc
        except (httpx.HTTPError, RetryError) as exc:
            logger.warning("%s %s %s transport failure: %s", self.name, method, path, exc)
            raise GatewayTransportError(self.name, str(exc) or type(exc).__name__) from exc

    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {"text": resp.text}
        return data if isinstance(data, dict) else {"data": data}

    def _declined(self, resp: httpx.Response, data: dict[str, Any]) -> GatewayResult:
        message, code = self._error_details(data)
        logger.info("%s declined request: %s (%s)", self.name, message, resp.status_code)
        return GatewayResult(
            success=False,
            message=message or f"HTTP {resp.status_code}",
            code=code or str(resp.status_code),
            raw=data,
        )

    def _error_details(self, data: dict[str, Any]) -> tuple[str, str | None]:
        """Extract (message, code) from a provider error body."""
        return str(data.get("message") or data.get("error") or ""), data.get("error_code")
