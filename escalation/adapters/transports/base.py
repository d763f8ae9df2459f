"""
Shared plumbing for HTTP-backed channel senders.

Thin wrapper around httpx so tests can swap in httpx.MockTransport. Network
failures and provider rejections become failed receipts; nothing is raised.
"""

import re
from typing import Any

import httpx

from escalation.domain.models import TransportReceipt
from escalation.services.common import logger

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")


def is_valid_email(address: str) -> bool:
    return bool(EMAIL_PATTERN.match(address))


def normalize_phone(number: str) -> str:
    return re.sub(r"[\s\-()]", "", number)


def is_valid_phone(number: str) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(number)))


class HttpSender:
    """Base class owning an httpx.AsyncClient."""

    provider_name = "http"

    def __init__(
        self, client: httpx.AsyncClient | None = None, timeout_seconds: float = 10.0
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0)
        )
        self.logger = logger.bind(component="transport", provider=self.provider_name)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response | TransportReceipt:
        """POST and return the response, or a failed receipt on network errors."""
        try:
            return await self._client.post(url, **kwargs)
        except httpx.TimeoutException:
            self.logger.warning("provider_timeout", url=url)
            return TransportReceipt(success=False, error="Network timeout")
        except httpx.HTTPError as e:
            self.logger.warning("provider_network_error", url=url, error=str(e))
            return TransportReceipt(success=False, error="Network error")

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}
