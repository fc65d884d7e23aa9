"""Webhook (HTTP POST) envelope sink."""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from bson import json_util
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from oplog_connector.config.models import WebhookSinkConfig
from oplog_connector.pipeline.events import OutputEnvelope

logger = structlog.get_logger()


def encode_envelope(envelope: OutputEnvelope) -> bytes:
    """Serialize an envelope as relaxed extended JSON."""
    return json_util.dumps(envelope.to_dict()).encode("utf-8")


class WebhookSink:
    """Sends each envelope as JSON via HTTP POST (or configured method)."""

    def __init__(self, config: WebhookSinkConfig) -> None:
        self._webhook = config
        self._client: httpx.AsyncClient | None = None
        self._last_delivered: str | None = None
        self.delivered = 0

    @property
    def last_delivered(self) -> str | None:
        return self._last_delivered

    async def start(self) -> None:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            **self._webhook.headers,
        }
        if self._webhook.auth_token is not None:
            headers["Authorization"] = (
                f"Bearer {self._webhook.auth_token.get_secret_value()}"
            )
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(self._webhook.timeout_seconds),
        )
        logger.info("webhook_sink.started", url=self._webhook.url)

    async def write(self, envelope: OutputEnvelope) -> None:
        if self._client is None:
            msg = "WebhookSink not started, call start() first"
            raise RuntimeError(msg)

        body = encode_envelope(envelope)
        retry_cfg = self._webhook.retry
        client = self._client

        @retry(
            stop=stop_after_attempt(retry_cfg.max_attempts),
            wait=wait_exponential_jitter(
                initial=retry_cfg.initial_wait_seconds,
                max=retry_cfg.max_wait_seconds,
                jitter=retry_cfg.multiplier if retry_cfg.jitter else 0,
            ),
            retry=retry_if_exception_type(
                (httpx.HTTPStatusError, httpx.TransportError)
            ),
            reraise=True,
        )
        async def _send() -> None:
            response = await client.request(
                method=self._webhook.method,
                url=self._webhook.url,
                content=body,
            )
            response.raise_for_status()

        await _send()

        self.delivered += 1
        start = envelope.correlation_id.get("start")
        if start is not None:
            self._last_delivered = start

        logger.debug(
            "webhook_sink.write",
            source=envelope.correlation_id.get("source"),
            start=start,
        )

    async def flush(self) -> None:
        # Webhook sink is not batched.
        pass

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("webhook_sink.stopped", delivered=self.delivered)

    async def health(self) -> dict[str, Any]:
        return {
            "type": "webhook",
            "status": "running" if self._client is not None else "stopped",
            "url": self._webhook.url,
            "delivered": self.delivered,
            "last_delivered": self._last_delivered,
        }
