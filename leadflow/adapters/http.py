"""HTTP email provider adapter."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..contracts import EmailMessage, SendResult
from .base import EmailSender

logger = logging.getLogger(__name__)


class HttpEmailSender(EmailSender):
    """Send emails by posting JSON to a provider API endpoint."""

    def __init__(
        self,
        url: str,
        from_address: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.from_address = from_address
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _payload(self, message: EmailMessage) -> dict[str, Any]:
        return {
            "from": self.from_address,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html_body,
            "text": message.text_body,
            "headers": message.headers,
        }

    async def send(self, message: EmailMessage) -> SendResult:
        if self._client is None:
            await self.connect()
        try:
            response = await self._client.post(self.url, json=self._payload(message))
        except httpx.HTTPError as e:
            logger.warning(f"Email provider request to {self.url} failed: {e}")
            return SendResult.failed(f"{type(e).__name__}: {e}")

        if response.status_code >= 400:
            return SendResult.failed(f"HTTP {response.status_code}: {response.text[:200]}")

        message_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            message_id = response.json().get("id")
        return SendResult.ok(message_id=message_id)
