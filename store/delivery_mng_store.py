from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.cloud.firestore_v1 import FieldFilter

from models.notification import ScheduledNotification
from shared.delivery_mng import DeliveryStatus, DeliveryTransport
from shared.time import Clock, ensure_aware_utc, parse_datetime, system_clock

logger = logging.getLogger(__name__)


class FirestoreDeliveryTransport(DeliveryTransport):
    """
    Notification registrations, one document per identifier in `<collection>`,
    picked up by the push worker for delivery.

    Cancelled entries are kept with last_status='cancelled' so the worker can
    drop anything it already queued; list_scheduled() only reports live ones.
    """

    def __init__(self, db, collection: str = "scheduled_notifications", clock: Clock = system_clock):
        self.clock = clock
        self.collection = db.collection(collection)

    def _schedule_sync(self, identifier: str, fire_at: datetime, title: str, body: str,
                       metadata: Optional[Dict[str, Any]]) -> None:
        status = DeliveryStatus(identifier=identifier, last_attempt=self.clock.now())
        doc = {
            **status.model_dump(mode="json"),
            "fire_at": ensure_aware_utc(fire_at).isoformat(),
            "title": title,
            "body": body,
            "metadata": dict(metadata or {}),
        }
        self.collection.document(identifier).set(doc)

    async def schedule(
        self,
        identifier: str,
        fire_at: datetime,
        title: str,
        body: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await asyncio.to_thread(self._schedule_sync, identifier, fire_at, title, body, metadata)
        logger.info("[TRANSPORT] scheduled %s at %s", identifier, fire_at.isoformat())

    def _cancel_sync(self, identifier: str) -> None:
        doc_ref = self.collection.document(identifier)
        if not doc_ref.get().exists:
            return
        doc_ref.set(
            {"last_status": "cancelled", "last_attempt": self.clock.now().isoformat()},
            merge=True,
        )

    async def cancel(self, identifier: str) -> None:
        await asyncio.to_thread(self._cancel_sync, identifier)
        logger.info("[TRANSPORT] cancelled %s", identifier)

    def _list_sync(self) -> List[ScheduledNotification]:
        q = self.collection.where(filter=FieldFilter("last_status", "==", "scheduled"))
        out: List[ScheduledNotification] = []
        for doc in q.stream():
            data = doc.to_dict() or {}
            try:
                out.append(ScheduledNotification(
                    identifier=doc.id,
                    fire_at=parse_datetime(data["fire_at"]),
                    metadata=data.get("metadata") or {},
                ))
            except (KeyError, ValueError):
                logger.warning("[TRANSPORT] unreadable registration %s", doc.id)
        return out

    async def list_scheduled(self) -> List[ScheduledNotification]:
        return await asyncio.to_thread(self._list_sync)
