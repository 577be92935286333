from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from models.family import FamilyMember, ReminderPage
from models.reminder_item import ReminderItem
from shared.errors import ReminderNotFoundError, StoreConflictError
from shared.streams import Subscription
from shared.time import Clock, system_clock
from store.base import FamilyProvider, ReminderStore, is_visible_to, order_by_due, order_for_listing

logger = logging.getLogger(__name__)


class InMemoryReminderStore(ReminderStore):
    """
    Process-local store with the same contract as the Firestore one.

    Used for local runs without credentials and by the test-suite. Each call
    completes without suspending, so every operation is atomic.
    """

    def __init__(self, clock: Clock = system_clock):
        self.clock = clock
        self._docs: Dict[str, ReminderItem] = {}
        self._subs: List[Tuple[str, Optional[Tuple[FamilyMember, ...]], Subscription]] = []

    # --- Mutations ------------------------------------------------------------

    async def create(self, item: ReminderItem) -> str:
        if item.op_id:
            for existing in self._docs.values():
                if existing.user_id == item.user_id and existing.op_id == item.op_id:
                    logger.info("[REMINDERS] create: op_id %s already applied -> %s", item.op_id, existing.item_id)
                    return existing.item_id

        item_id = item.item_id or uuid.uuid4().hex
        if item_id in self._docs:
            raise StoreConflictError(item_id, None, self._docs[item_id].version)

        now = self.clock.now()
        stored = item.model_copy(update={"item_id": item_id, "version": 1, "created_at": now, "updated_at": now})
        self._docs[item_id] = stored
        logger.info("[REMINDERS] Created reminder %s for user %s", item_id, item.user_id)
        self._notify()
        return item_id

    async def update(
        self,
        item_id: str,
        fields: Dict[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> ReminderItem:
        current = self._docs.get(item_id)
        if current is None:
            raise ReminderNotFoundError(item_id)
        if expected_version is not None and current.version != expected_version:
            raise StoreConflictError(item_id, expected_version, current.version)

        data = current.model_dump()
        data.update(fields)
        data.update(item_id=item_id, version=current.version + 1, updated_at=self.clock.now())
        updated = ReminderItem.model_validate(data)
        self._docs[item_id] = updated
        logger.info("[REMINDERS] Updated reminder %s (v%s)", item_id, updated.version)
        self._notify()
        return updated

    async def delete(self, item_id: str) -> bool:
        if self._docs.pop(item_id, None) is None:
            logger.info("[REMINDERS] delete: item %s not found", item_id)
            return False
        logger.info("[REMINDERS] Deleted reminder %s", item_id)
        self._notify()
        return True

    # --- Queries --------------------------------------------------------------

    async def get_by_id(self, item_id: str) -> Optional[ReminderItem]:
        return self._docs.get(item_id)

    def _visible(self, user_id: str, family: Optional[Sequence[FamilyMember]]) -> List[ReminderItem]:
        return order_for_listing(r for r in self._docs.values() if is_visible_to(r, user_id, family))

    async def query_by_owner(
        self,
        user_id: str,
        page: int,
        page_size: int,
        *,
        family: Optional[Sequence[FamilyMember]] = None,
    ) -> ReminderPage:
        return ReminderPage.slice_of(tuple(self._visible(user_id, family)), page, page_size)

    async def query_by_series(self, series_id: str) -> List[ReminderItem]:
        return order_by_due(r for r in self._docs.values() if r.series_id == series_id)

    def subscribe(
        self,
        user_id: str,
        *,
        family: Optional[Sequence[FamilyMember]] = None,
    ) -> Subscription[List[ReminderItem]]:
        members = tuple(family) if family else None
        entry: list = []

        def _unsubscribe() -> None:
            if entry and entry[0] in self._subs:
                self._subs.remove(entry[0])

        sub: Subscription[List[ReminderItem]] = Subscription(on_cancel=_unsubscribe)
        entry.append((user_id, members, sub))
        self._subs.append(entry[0])
        # initial snapshot, like a Firestore listener
        sub.push(self._visible(user_id, members))
        return sub

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def _notify(self) -> None:
        for user_id, members, sub in list(self._subs):
            sub.push(self._visible(user_id, members))


class InMemoryFamilyProvider(FamilyProvider):
    def __init__(self, members: Optional[Sequence[FamilyMember]] = None):
        self._members: List[FamilyMember] = list(members or [])

    def set_members(self, members: Sequence[FamilyMember]) -> None:
        """Replace the membership snapshot (test helper; the core never calls this)."""
        self._members = list(members)

    async def get_members(self, family_id: str) -> List[FamilyMember]:
        return [m for m in self._members if m.family_id == family_id]
