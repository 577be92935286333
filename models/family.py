from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from models.reminder_item import ReminderItem

FamilyRole = Literal["owner", "admin", "member"]


class FamilyMember(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    family_id: str
    role: FamilyRole = "member"
    display_name: Optional[str] = None

    @property
    def can_see_shared(self) -> bool:
        return self.role in ("owner", "admin")


class ReminderPage(BaseModel):
    """One page of a user's (optionally family-scoped) reminder list."""

    model_config = ConfigDict(frozen=True)

    items: Tuple[ReminderItem, ...] = ()
    has_more: bool = False
    total_count: int = 0

    @classmethod
    def empty(cls) -> "ReminderPage":
        return cls()

    @classmethod
    def slice_of(cls, ordered: Tuple[ReminderItem, ...], page: int, page_size: int) -> "ReminderPage":
        start = page * page_size
        end = start + page_size
        return cls(items=tuple(ordered[start:end]), has_more=end < len(ordered), total_count=len(ordered))


class CacheEntry(BaseModel):
    """
    Immutable cache slot keyed by (user_id, family_id, page).

    Entries are replaced, never mutated; readers always see a complete entry.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    family_id: Optional[str] = None
    page_index: int
    page: ReminderPage
    inserted_at: datetime
    generation: int = 0

    @property
    def items(self) -> Tuple[ReminderItem, ...]:
        return self.page.items

    @property
    def has_more(self) -> bool:
        return self.page.has_more

    @property
    def total_count(self) -> int:
        return self.page.total_count
