"""Registry events and their delivery.

Services publish events only after the unit of work that produced them has
committed. Delivery is fire-and-forget: the API hands the drained events to
a background task, and a failed webhook call is logged, never raised back
into the request that caused it.
"""

import logging
import os
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

import httpx
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models import utcnow

load_dotenv()

logger = logging.getLogger(__name__)

NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "5.0"))


class EventKind(str, Enum):
    PARCEL_REGISTERED = "parcel_registered"
    PARCEL_VERIFIED = "parcel_verified"
    TRANSFER_INITIATED = "transfer_initiated"
    OWNERSHIP_CHANGED = "ownership_changed"
    TRANSFER_REJECTED = "transfer_rejected"
    TRANSFER_CANCELLED = "transfer_cancelled"


class RegistryEvent(BaseModel):
    kind: EventKind
    parcel_id: UUID
    transfer_id: UUID | None = None
    actor_id: UUID
    occurred_at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)


class EventPublisher:
    """Collects events raised while serving one request."""

    def __init__(self) -> None:
        self._pending: list[RegistryEvent] = []

    def publish(self, event: RegistryEvent) -> None:
        logger.info(
            f"Event {event.kind.value}: parcel={event.parcel_id} transfer={event.transfer_id}"
        )
        self._pending.append(event)

    @property
    def pending(self) -> list[RegistryEvent]:
        return list(self._pending)

    def drain(self) -> list[RegistryEvent]:
        events, self._pending = self._pending, []
        return events


class WebhookNotifier:
    """POSTs each event as JSON to a configured URL."""

    def __init__(self, url: str, timeout: float = NOTIFY_TIMEOUT, client: httpx.Client | None = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def deliver(self, events: list[RegistryEvent]) -> int:
        """Send events in order. Returns how many were accepted."""
        delivered = 0
        for event in events:
            try:
                response = self._client.post(self.url, json=event.model_dump(mode="json"))
                response.raise_for_status()
                delivered += 1
            except httpx.HTTPError as e:
                logger.warning(f"Webhook delivery failed for {event.kind.value} ({event.parcel_id}): {e}")
        if events:
            logger.debug(f"Delivered {delivered}/{len(events)} events to {self.url}")
        return delivered


def notifier_from_env() -> WebhookNotifier | None:
    if not NOTIFY_WEBHOOK_URL:
        return None
    return WebhookNotifier(NOTIFY_WEBHOOK_URL)
