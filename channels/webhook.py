"""
HttpWebhookClient — httpx-backed implementation of WebhookClient.

Retry policy is a property of this client, never of the engine:
``max_attempts=1`` (the default) means exactly one POST. Higher values
retry transport failures only (connection refused, timeouts, DNS) with
exponential backoff; a response from the remote is never retried,
whatever its status.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying, RetryError, retry_if_exception_type,
    stop_after_attempt, wait_exponential,
)

from channels.base import WebhookClient, WebhookResponse

logger = structlog.get_logger()


class HttpWebhookClient(WebhookClient):

    def __init__(
        self,
        timeout: float = 10.0,
        max_attempts: int = 1,
        backoff_max: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_max = backoff_max
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self.client

    async def post(
        self,
        url: str,
        json_body: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> WebhookResponse:
        client = await self._get_client()
        request_headers = {"Content-Type": "application/json", **(headers or {})}

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, max=self.backoff_max),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await client.post(
                        url,
                        json=json_body,
                        headers=request_headers,
                        timeout=timeout if timeout is not None else self.timeout,
                    )
        except (httpx.TransportError, RetryError) as e:
            logger.warning("webhook_transport_failed", url=url, error=str(e) or type(e).__name__)
            return WebhookResponse(error=str(e) or type(e).__name__)

        logger.info("webhook_posted", url=url, status=response.status_code)
        return WebhookResponse(
            status_code=response.status_code,
            reason=response.reason_phrase,
        )

    async def close(self):
        if self.client:
            await self.client.aclose()
