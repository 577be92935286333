from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

IDENTIFIER_SEPARATOR = ":"


def notification_identifier(reminder_id: str, anchor_date: date, offset_minutes: int) -> str:
    """
    Deterministic id for one notification of one occurrence.

    Pure function of its inputs, so re-deriving the desired set for the same
    occurrence always produces the same ids and duplicate schedules collapse.
    """
    return f"{reminder_id}{IDENTIFIER_SEPARATOR}{anchor_date.isoformat()}{IDENTIFIER_SEPARATOR}{int(offset_minutes)}"


def identifier_prefix(reminder_id: str) -> str:
    return f"{reminder_id}{IDENTIFIER_SEPARATOR}"


class NotificationRequest(BaseModel):
    """A notification that should exist for a reminder occurrence."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    reminder_id: str
    anchor_date: date
    offset_minutes: int
    fire_at: datetime
    title: str
    body: str

    def metadata(self) -> Dict[str, Any]:
        return {
            "reminderId": self.reminder_id,
            "anchorDate": self.anchor_date.isoformat(),
            "offsetMinutes": self.offset_minutes,
        }


class ScheduledNotification(BaseModel):
    """What the delivery transport reports as currently registered."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    fire_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def owner_reminder_id(self) -> Optional[str]:
        owner = self.metadata.get("reminderId")
        return str(owner) if owner else None


class ReconcileResult(BaseModel):
    reminder_id: str
    scheduled_count: int = 0
    cancelled_count: int = 0
    unchanged_count: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class TeardownResult(BaseModel):
    reminder_id: str
    cancelled_count: int = 0
    errors: List[str] = Field(default_factory=list)
    # identifiers still registered after teardown; reported, never fatal
    remaining: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.remaining

    def warnings(self) -> List[str]:
        out = list(self.errors)
        if self.remaining:
            out.append(f"{len(self.remaining)} notification(s) still registered for {self.reminder_id}: "
                       + ", ".join(self.remaining))
        return out
