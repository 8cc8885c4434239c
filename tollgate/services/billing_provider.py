from __future__ import annotations

import logging
import time
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from tollgate.core.config import get_settings
from tollgate.core.errors import BillingProviderError, BillingSubscriptionNotFoundError
from tollgate.services.resilience import retry_async


logger = logging.getLogger(__name__)


class BillingProviderClient(Protocol):
    async def get_user_billing_subscription(self, subscriber_id: str) -> dict[str, Any]:
        ...


def _retryable(exc: Exception) -> bool:
    # Retry timeouts, network errors and provider 5xx; 4xx answers are final.
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


class HttpBillingProviderClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.billing_api_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.billing_api_key
        self._timeout_s = settings.ext_call_timeout_ms / 1000.0
        # Tests inject httpx.MockTransport instead of reaching the network.
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def get_user_billing_subscription(self, subscriber_id: str) -> dict[str, Any]:
        if not self._api_key:
            raise BillingProviderError("Billing provider API key is not configured")
        url = f"{self._base_url}/users/{quote(subscriber_id, safe='')}/billing/subscription"

        async def _call() -> dict[str, Any]:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.get(url, headers=self._headers())
            if response.status_code == 404:
                raise BillingSubscriptionNotFoundError(subscriber_id)
            if response.status_code >= 400:
                raise BillingProviderError(
                    f"Billing provider returned {response.status_code}",
                    status_code=response.status_code,
                )
            payload = response.json()
            if not isinstance(payload, dict):
                raise BillingProviderError("Billing provider returned a non-object payload")
            return payload

        start = time.monotonic()
        try:
            return await retry_async(_call, retryable=_retryable)
        except BillingSubscriptionNotFoundError:
            raise
        except httpx.HTTPError as exc:
            logger.warning("billing_provider_unreachable error=%s", type(exc).__name__, exc_info=exc)
            raise BillingProviderError(f"Billing provider unreachable: {type(exc).__name__}") from exc
        finally:
            logger.debug("billing_provider_call latency_ms=%.1f", (time.monotonic() - start) * 1000.0)


_billing_client: BillingProviderClient | None = None


def get_billing_provider_client() -> BillingProviderClient:
    global _billing_client
    if _billing_client is None:
        _billing_client = HttpBillingProviderClient()
    return _billing_client


def reset_billing_provider_client() -> None:
    # Reset cached clients for deterministic tests.
    global _billing_client
    _billing_client = None
