from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from models.notification import ScheduledNotification
from shared.time import ensure_aware_utc

logger = logging.getLogger(__name__)


class DeliveryStatus(BaseModel):
    """Book-keeping kept next to each registered notification."""

    identifier: str
    retry_count: int = 0
    last_status: Literal["scheduled", "cancelled", "failed"] = "scheduled"
    last_attempt: datetime | None = None
    last_error: str | None = None


class DeliveryTransport(ABC):
    """
    Push-delivery collaborator. At-least-once; scheduling the same identifier
    twice replaces the first registration, so duplicate calls are harmless.
    """

    @abstractmethod
    async def schedule(
        self,
        identifier: str,
        fire_at: datetime,
        title: str,
        body: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    @abstractmethod
    async def cancel(self, identifier: str) -> None:
        """Cancelling an unknown identifier is not an error."""

    @abstractmethod
    async def list_scheduled(self) -> List[ScheduledNotification]:
        ...


class InMemoryDeliveryTransport(DeliveryTransport):
    """Local transport: keeps the registrations in a dict. Used for local runs and tests."""

    def __init__(self):
        self.entries: Dict[str, ScheduledNotification] = {}
        self.payloads: Dict[str, Dict[str, str]] = {}
        self.schedule_calls = 0
        self.cancel_calls = 0

    async def schedule(
        self,
        identifier: str,
        fire_at: datetime,
        title: str,
        body: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.schedule_calls += 1
        self.entries[identifier] = ScheduledNotification(
            identifier=identifier,
            fire_at=ensure_aware_utc(fire_at),
            metadata=dict(metadata or {}),
        )
        self.payloads[identifier] = {"title": title, "body": body}
        logger.debug("[TRANSPORT] scheduled %s at %s", identifier, fire_at)

    async def cancel(self, identifier: str) -> None:
        self.cancel_calls += 1
        self.entries.pop(identifier, None)
        self.payloads.pop(identifier, None)
        logger.debug("[TRANSPORT] cancelled %s", identifier)

    async def list_scheduled(self) -> List[ScheduledNotification]:
        return list(self.entries.values())
