from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter  # Firestore filter objects

from models.family import FamilyMember, ReminderPage
from models.reminder_item import ReminderItem
from shared.errors import ReminderNotFoundError, StoreConflictError
from shared.streams import Subscription
from shared.time import Clock, system_clock
from store.base import ReminderStore, find_member, is_visible_to, order_by_due, order_for_listing

logger = logging.getLogger(__name__)

IN_FILTER_LIMIT = 30


def _encode(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Pydantic values -> Firestore-friendly JSON values."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if hasattr(value, "model_dump"):
            out[key] = value.model_dump(mode="json")
        elif hasattr(value, "isoformat"):
            out[key] = value.isoformat()
        elif isinstance(value, (list, tuple)):
            out[key] = list(value)
        else:
            out[key] = value
    return out


class FirestoreReminderStore(ReminderStore):
    """
    Firestore-backed store for ReminderItem (item_type='reminder'), one document per instance.

    The Firestore client is synchronous; calls run in a worker thread so the
    event loop never blocks on network I/O.
    """

    def __init__(self, db, collection: str = "reminders", clock: Clock = system_clock):
        self.db = db
        self.collection = db.collection(collection)
        self.clock = clock

    # --- Mutations ------------------------------------------------------------

    async def create(self, item: ReminderItem) -> str:
        return await asyncio.to_thread(self._create_sync, item)

    def _create_sync(self, item: ReminderItem) -> str:
        try:
            if item.op_id:
                q = (
                    self.collection
                    .where(filter=FieldFilter("user_id", "==", item.user_id))
                    .where(filter=FieldFilter("op_id", "==", item.op_id))
                    .limit(1)
                )
                existing = list(q.stream())
                if existing:
                    logger.info("[REMINDERS] create: op_id %s already applied -> %s", item.op_id, existing[0].id)
                    return existing[0].id

            doc_ref = self.collection.document(item.item_id) if item.item_id else self.collection.document()
            now = self.clock.now()
            stored = item.model_copy(update={"item_id": doc_ref.id, "version": 1, "created_at": now, "updated_at": now})
            # create() fails if the id is taken, set() would overwrite it
            doc_ref.create(stored.to_document())
            logger.info("[REMINDERS] Created reminder %s for user %s", doc_ref.id, item.user_id)
            return doc_ref.id
        except Exception:
            logger.exception("[REMINDERS] create failed for user %s", item.user_id)
            raise

    async def update(
        self,
        item_id: str,
        fields: Dict[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> ReminderItem:
        return await asyncio.to_thread(self._update_sync, item_id, fields, expected_version)

    def _update_sync(self, item_id: str, fields: Dict[str, Any], expected_version: Optional[int]) -> ReminderItem:
        doc_ref = self.collection.document(item_id)
        transaction = self.db.transaction()
        now = self.clock.now()

        @firestore.transactional
        def _apply(tx) -> ReminderItem:
            snap = doc_ref.get(transaction=tx)
            if not snap.exists:
                raise ReminderNotFoundError(item_id)
            current = ReminderItem.from_document(snap.to_dict() or {}, item_id=snap.id)
            if expected_version is not None and current.version != expected_version:
                raise StoreConflictError(item_id, expected_version, current.version)

            data = current.model_dump()
            data.update(fields)
            data.update(item_id=item_id, version=current.version + 1, updated_at=now)
            updated = ReminderItem.model_validate(data)

            patch = _encode(fields)
            patch.update(version=updated.version, updated_at=now.isoformat())
            tx.update(doc_ref, patch)
            return updated

        updated = _apply(transaction)
        logger.info("[REMINDERS] Updated reminder %s (v%s)", item_id, updated.version)
        return updated

    async def delete(self, item_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, item_id)

    def _delete_sync(self, item_id: str) -> bool:
        doc_ref = self.collection.document(item_id)
        snap = doc_ref.get()
        if not snap.exists:
            logger.info("[REMINDERS] delete: item %s not found", item_id)
            return False
        doc_ref.delete()
        logger.info("[REMINDERS] Deleted reminder %s", item_id)
        return True

    # --- Queries --------------------------------------------------------------

    async def get_by_id(self, item_id: str) -> Optional[ReminderItem]:
        snap = await asyncio.to_thread(self.collection.document(item_id).get)
        if not snap.exists:
            return None
        return ReminderItem.from_document(snap.to_dict() or {}, item_id=snap.id)

    def _docs_to_items(self, docs) -> List[ReminderItem]:
        items: List[ReminderItem] = []
        for doc in docs:
            try:
                items.append(ReminderItem.from_document(doc.to_dict() or {}, item_id=doc.id))
            except Exception:
                logger.warning("[REMINDERS] skipping unreadable document %s", doc.id, exc_info=True)
        return items

    def _visible_sync(self, user_id: str, family: Optional[Sequence[FamilyMember]]) -> List[ReminderItem]:
        """
        Own + assigned + (for owners/admins) family-shared reminders.
        Each query is independent; a failing one is logged and skipped.
        """
        seen: Dict[str, ReminderItem] = {}

        queries = [
            ("own", self.collection.where(filter=FieldFilter("user_id", "==", user_id))),
            ("assigned", self.collection.where(filter=FieldFilter("assigned_to", "array_contains", user_id))),
        ]
        viewer = find_member(user_id, family)
        if viewer is not None and viewer.can_see_shared:
            for m in family or ():
                if m.user_id == user_id:
                    continue
                queries.append((
                    f"family:{m.user_id}",
                    self.collection
                    .where(filter=FieldFilter("user_id", "==", m.user_id))
                    .where(filter=FieldFilter("shared_with_family", "==", True)),
                ))

        for label, q in queries:
            try:
                for item in self._docs_to_items(q.stream()):
                    seen.setdefault(item.item_id, item)
            except Exception:
                logger.exception("[REMINDERS] %s query failed for user %s", label, user_id)

        return order_for_listing(r for r in seen.values() if is_visible_to(r, user_id, family))

    async def query_by_owner(
        self,
        user_id: str,
        page: int,
        page_size: int,
        *,
        family: Optional[Sequence[FamilyMember]] = None,
    ) -> ReminderPage:
        items = await asyncio.to_thread(self._visible_sync, user_id, family)
        return ReminderPage.slice_of(tuple(items), page, page_size)

    def _series_sync(self, series_id: str) -> List[ReminderItem]:
        q = self.collection.where(filter=FieldFilter("series_id", "==", series_id))
        return order_by_due(self._docs_to_items(q.stream()))

    async def query_by_series(self, series_id: str) -> List[ReminderItem]:
        try:
            return await asyncio.to_thread(self._series_sync, series_id)
        except Exception:
            logger.exception("[REMINDERS] series query failed for %s", series_id)
            raise

    def subscribe(
        self,
        user_id: str,
        *,
        family: Optional[Sequence[FamilyMember]] = None,
    ) -> Subscription[List[ReminderItem]]:
        """
        One listener per query; any snapshot re-reads the merged list and pushes it.
        Listener callbacks run on Firestore's thread, hence push_threadsafe.
        """
        members = tuple(family) if family else None
        watches: list = []

        def _unsubscribe() -> None:
            for w in watches:
                try:
                    w.unsubscribe()
                except Exception:
                    logger.warning("[REMINDERS] listener unsubscribe failed", exc_info=True)
            watches.clear()

        sub: Subscription[List[ReminderItem]] = Subscription(on_cancel=_unsubscribe)

        def _on_snapshot(_docs, _changes, _read_time) -> None:
            if sub.closed:
                return
            try:
                sub.push_threadsafe(self._visible_sync(user_id, members))
            except Exception:
                logger.exception("[REMINDERS] snapshot refresh failed for user %s", user_id)

        watches.append(self.collection.where(filter=FieldFilter("user_id", "==", user_id)).on_snapshot(_on_snapshot))
        watches.append(
            self.collection.where(filter=FieldFilter("assigned_to", "array_contains", user_id)).on_snapshot(_on_snapshot)
        )
        if members:
            others = [m.user_id for m in members if m.user_id != user_id]
            # Firestore caps "in" filters at 30 values, one listener per chunk
            for i in range(0, len(others), IN_FILTER_LIMIT):
                watches.append(
                    self.collection
                    .where(filter=FieldFilter("user_id", "in", others[i:i + IN_FILTER_LIMIT]))
                    .where(filter=FieldFilter("shared_with_family", "==", True))
                    .on_snapshot(_on_snapshot)
                )
        logger.info("[REMINDERS] subscribed user %s (%s listeners)", user_id, len(watches))
        return sub
