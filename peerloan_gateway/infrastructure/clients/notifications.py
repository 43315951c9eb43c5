"""Notification service HTTP client with exponential backoff retry logic"""

import asyncio
from typing import Protocol

import httpx

from peerloan_gateway.config import Settings, settings_provider
from peerloan_gateway.domain.exceptions import NotificationDeliveryError
from peerloan_gateway.domain.models import Notification
from peerloan_gateway.infrastructure.observability.metrics import (
    notification_latency_histogram,
    notification_failure_counter,
)


class NotificationSink(Protocol):
    """Anything that can deliver a notification (email + in-app)"""

    async def deliver(self, notification: Notification) -> None: ...


class HttpNotificationSink:
    """Client posting notifications to the external notification service"""

    def __init__(self, webhook_url: str | None = None, config: Settings | None = None):
        config = config or settings_provider.get()
        self.webhook_url = webhook_url or config.notification_webhook_url
        self.timeout = config.http_timeout_seconds
        self.max_retries = config.webhook_max_retries
        self.backoff_base = config.webhook_backoff_base

    async def deliver(self, notification: Notification) -> None:
        """
        Send one notification with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s (base * 2^attempt)
        - Retries on 5xx/4xx responses and network failures
        - Tracks latency histogram and failure counter

        Raises:
            NotificationDeliveryError: after the final failed attempt
        """
        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            while attempt < self.max_retries:
                try:
                    with notification_latency_histogram.time():
                        response = await client.post(self.webhook_url, json=notification.to_payload())
                        response.raise_for_status()
                        return

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    notification_failure_counter.labels(kind=notification.kind).inc()

                    if attempt >= self.max_retries:
                        raise NotificationDeliveryError(
                            f"Notification {notification.kind} to {notification.recipient_id} failed: {e}"
                        ) from e

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)

