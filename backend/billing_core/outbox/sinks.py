"""
Delivery sinks for outbound events.

Delivery is at-least-once: a sink may see the same event again after a
retry, so every message carries the outbound event id for consumer-side
de-duplication.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from billing_core.config.settings import BillingSettings
from billing_core.errors import DeliveryError
from billing_core.models.outbound_event import OutboundEvent

logger = logging.getLogger(__name__)


class DeliverySink(ABC):
    """Interface: deliver one event or raise DeliveryError."""

    name = "sink"

    @abstractmethod
    def deliver(self, event: OutboundEvent) -> None:
        pass

    def close(self) -> None:
        pass


class LoggingSink(DeliverySink):
    """Writes each event to the application log."""

    name = "log"

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("billing_core.outbox.delivery")

    def deliver(self, event: OutboundEvent) -> None:
        self.log.info(
            "Outbound event delivered: %s",
            json.dumps(event.to_message(), sort_keys=True, default=str),
            extra={"outbound_event_id": event.id, "event_type": event.event_type},
        )


class HttpRelaySink(DeliverySink):
    """POSTs each event as JSON to a relay endpoint."""

    name = "http"

    def __init__(self, url: str, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        if not url:
            raise ValueError("HttpRelaySink requires a relay URL")
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def deliver(self, event: OutboundEvent) -> None:
        try:
            response = self._client.post(
                self.url,
                content=json.dumps(event.to_message(), default=str),
                headers={
                    "Content-Type": "application/json",
                    "Idempotency-Key": event.id,
                },
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"Relay request failed: {e}") from e

        if response.status_code >= 300:
            raise DeliveryError(
                f"Relay responded with HTTP {response.status_code}: {response.text[:200]}"
            )

    def close(self) -> None:
        self._client.close()


def build_sink(settings: BillingSettings) -> DeliverySink:
    if settings.outbox_sink == "http":
        return HttpRelaySink(settings.outbox_relay_url)
    if settings.outbox_sink != "log":
        logger.warning("Unknown OUTBOX_SINK, falling back to log sink", extra={"sink": settings.outbox_sink})
    return LoggingSink()
