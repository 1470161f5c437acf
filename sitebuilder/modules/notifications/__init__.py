"""
Notifications Module - Black Box Interface

Purpose: Tell interested parties that a build started, succeeded or failed
Interface: Notifier.notify(event, payload), create_notifier()
Hidden: Delivery transport

Delivery is best-effort: a failed notification never affects a build.
"""

import logging
import time
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger("sitebuilder.notifications")

BUILD_STARTED = "build.started"
BUILD_SUCCEEDED = "build.succeeded"
BUILD_FAILED = "build.failed"


class Notifier(Protocol):
    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class NullNotifier:
    """Discards every notification."""

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Notification {event} dropped (no notifier configured)")


class WebhookNotifier:
    """POSTs each event as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        body = {"event": event, "timestamp": time.time(), **payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=body)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to deliver {event} notification: {e}")


def create_notifier(webhook_url: Optional[str]) -> Notifier:
    if webhook_url:
        return WebhookNotifier(webhook_url)
    return NullNotifier()


__all__ = [
    "BUILD_FAILED",
    "BUILD_STARTED",
    "BUILD_SUCCEEDED",
    "Notifier",
    "NullNotifier",
    "WebhookNotifier",
    "create_notifier",
]
