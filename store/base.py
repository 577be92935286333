from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

from models.family import FamilyMember, ReminderPage
from models.reminder_item import ReminderItem
from shared.streams import Subscription


def find_member(user_id: str, members: Optional[Sequence[FamilyMember]]) -> Optional[FamilyMember]:
    for m in members or ():
        if m.user_id == user_id:
            return m
    return None


def is_visible_to(item: ReminderItem, user_id: str, members: Optional[Sequence[FamilyMember]] = None) -> bool:
    """
    Visibility rule for a user's list:
    - own reminders
    - reminders assigned to the user
    - for family owners/admins, reminders other members shared with the family
    """
    if item.status == "deleted":
        return False
    if item.user_id == user_id or user_id in item.assigned_to:
        return True
    if not members or not item.shared_with_family:
        return False
    viewer = find_member(user_id, members)
    if viewer is None or not viewer.can_see_shared:
        return False
    return find_member(item.user_id, members) is not None


def order_for_listing(items: Iterable[ReminderItem]) -> List[ReminderItem]:
    """Most recently updated first; id breaks ties so pages are stable."""
    return sorted(
        items,
        key=lambda r: (r.updated_at.timestamp() if r.updated_at else 0.0, r.item_id or ""),
        reverse=True,
    )


def order_by_due(items: Iterable[ReminderItem]) -> List[ReminderItem]:
    return sorted(items, key=lambda r: (r.due_date, r.occurrence_index, r.item_id or ""))


class ReminderStore(ABC):
    """
    Document store for reminder records.

    Every call is atomic per document and durable on return. `update` with an
    `expected_version` is a compare-and-set: a concurrent write makes it raise
    StoreConflictError instead of silently overwriting.
    """

    @abstractmethod
    async def create(self, item: ReminderItem) -> str:
        """Persist a new reminder and return its id. Idempotent on (user_id, op_id)."""

    @abstractmethod
    async def update(
        self,
        item_id: str,
        fields: Dict[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> ReminderItem:
        """
        Apply `fields` and bump the version. Returns the stored record.
        Raises ReminderNotFoundError / StoreConflictError.
        """

    @abstractmethod
    async def delete(self, item_id: str) -> bool:
        """Remove the record. Returns False when it did not exist."""

    @abstractmethod
    async def get_by_id(self, item_id: str) -> Optional[ReminderItem]:
        ...

    @abstractmethod
    async def query_by_owner(
        self,
        user_id: str,
        page: int,
        page_size: int,
        *,
        family: Optional[Sequence[FamilyMember]] = None,
    ) -> ReminderPage:
        """One page of the reminders visible to `user_id` (see is_visible_to)."""

    @abstractmethod
    async def query_by_series(self, series_id: str) -> List[ReminderItem]:
        """Every stored instance of a recurring series, earliest due date first."""

    @abstractmethod
    def subscribe(
        self,
        user_id: str,
        *,
        family: Optional[Sequence[FamilyMember]] = None,
    ) -> Subscription[List[ReminderItem]]:
        """Snapshot feed of the full visible list. Cancel the handle to unregister."""


class FamilyProvider(ABC):
    """Read-only family membership. The reminder core never mutates it."""

    @abstractmethod
    async def get_members(self, family_id: str) -> List[FamilyMember]:
        ...
