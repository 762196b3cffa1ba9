"""
Webhook message transport — hands outbound texts to an SMS gateway over HTTP.

POST {webhook_url}
    {"contact_id": "...", "text": "...", "metadata": {...}}
→ 2xx {"delivery_id": "..."}      (or "id" / "message_id")

Network errors, 429 and 5xx are retried with exponential backoff; other
4xx responses fail immediately. Either way the caller sees TransportError.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt,
    wait_exponential,
)

from config.settings import TransportConfig, get_settings
from core.collaborators import MessageTransport
from core.errors import TransportError

logger = structlog.get_logger()


class _RetryableStatus(Exception):
    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"gateway returned {status_code}")


class WebhookTransport(MessageTransport):
    """
    Sends each message as one JSON POST. The client is created lazily and
    reused; pass `client` to inject one (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        backoff_max: float = 10.0,
    ):
        self.config = config or get_settings().transport
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_max = backoff_max

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        response = await client.post(self.config.webhook_url, json=payload)
        if response.status_code == 429 or response.status_code >= 500:
            raise _RetryableStatus(response.status_code)
        return response

    async def send(self, contact_id: str, text: str, metadata: Optional[dict[str, Any]] = None) -> str:
        if not self.config.webhook_url:
            raise TransportError("No webhook_url configured for message transport")

        payload = {"contact_id": contact_id, "text": text, "metadata": metadata or {}}
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, max=self.backoff_max),
                retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
            ):
                with attempt:
                    response = await self._post(payload)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error("webhook_send_exhausted", contact_id=contact_id, error=str(cause))
            raise TransportError(f"Webhook delivery failed: {cause}", retryable=True) from cause

        if response.is_error:
            logger.error("webhook_send_rejected", contact_id=contact_id, status=response.status_code)
            raise TransportError(f"Webhook rejected message: HTTP {response.status_code}")

        delivery_id = ""
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            delivery_id = str(body.get("delivery_id") or body.get("id") or body.get("message_id") or "")

        logger.debug("webhook_sent", contact_id=contact_id, delivery_id=delivery_id)
        return delivery_id

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
