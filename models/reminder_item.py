from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, ClassVar, Dict, FrozenSet, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.base_item import BaseActionItem
from models.recurrence import RecurrenceRule
from shared.time import DEFAULT_TZ_NAME, MINUTES_PER_DAY, is_valid_timezone, parse_time_of_day

TimingType = Literal["before", "exact", "after"]


class NotificationTiming(BaseModel):
    """One lead-time offset. `before` fires ahead of the due instant, `after` is an overdue nudge."""

    model_config = ConfigDict(frozen=True)

    type: TimingType = "before"
    value: int = Field(0, ge=0, description="Minutes before/after the due instant; ignored for 'exact'.")
    label: Optional[str] = None

    @property
    def offset_minutes(self) -> int:
        """Signed lead time: positive = before due, negative = after due."""
        if self.type == "exact":
            return 0
        return self.value if self.type == "before" else -self.value

    @classmethod
    def minutes_before(cls, minutes: int) -> "NotificationTiming":
        return cls(type="before", value=minutes, label=f"{minutes} minutes before")

    @classmethod
    def days_before(cls, days: int) -> "NotificationTiming":
        return cls(type="before", value=days * MINUTES_PER_DAY, label=f"{days} day{'s' if days != 1 else ''} before")

    @classmethod
    def at_due_time(cls) -> "NotificationTiming":
        return cls(type="exact", value=0, label="At due time")

    @classmethod
    def minutes_after(cls, minutes: int) -> "NotificationTiming":
        return cls(type="after", value=minutes, label=f"{minutes} minutes after")


DEFAULT_NOTIFICATION_TIMINGS: Tuple[NotificationTiming, ...] = (
    NotificationTiming(type="before", value=60, label="1 hour before"),
    NotificationTiming(type="before", value=30, label="30 minutes before"),
    NotificationTiming(type="before", value=15, label="15 minutes before"),
    NotificationTiming(type="exact", value=0, label="At due time"),
)


class NotificationPolicy(BaseModel):
    """Ordered set of lead-time offsets plus an on/off flag."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    timings: Tuple[NotificationTiming, ...] = DEFAULT_NOTIFICATION_TIMINGS

    @field_validator("timings")
    @classmethod
    def _dedupe_and_order(cls, v: Tuple[NotificationTiming, ...]) -> Tuple[NotificationTiming, ...]:
        # one timing per signed offset, earliest-firing first
        by_offset: Dict[int, NotificationTiming] = {}
        for t in v:
            by_offset.setdefault(t.offset_minutes, t)
        return tuple(by_offset[k] for k in sorted(by_offset, reverse=True))

    @property
    def offsets(self) -> List[int]:
        return [t.offset_minutes for t in self.timings] if self.enabled else []

    @classmethod
    def disabled(cls) -> "NotificationPolicy":
        return cls(enabled=False, timings=())


class ReminderItem(BaseActionItem):
    """
    One reminder instance as stored in the document store.

    Recurring series are materialized one occurrence at a time: each instance
    carries the series rule, the original anchor and its 1-based position.
    """

    due_date: date
    due_time: Optional[time] = None
    timezone: str = DEFAULT_TZ_NAME

    recurrence: Optional[RecurrenceRule] = None
    recurrence_anchor: Optional[date] = None
    series_id: Optional[str] = None
    occurrence_index: int = 1

    notification_policy: NotificationPolicy = NotificationPolicy()

    assigned_to: Tuple[str, ...] = ()
    family_id: Optional[str] = None
    shared_with_family: bool = False

    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("due_time", mode="before")
    @classmethod
    def _parse_due_time(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_time_of_day(v) if v.strip() else None
        return v

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        if not is_valid_timezone(v):
            raise ValueError(f"unknown timezone: {v}")
        return v

    @field_validator("assigned_to", mode="before")
    @classmethod
    def _normalize_assignment(cls, v: Any) -> Any:
        if v is None:
            return ()
        return tuple(sorted({str(x) for x in v if x}))

    # --- derived views ------------------------------------------------------

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None

    @property
    def anchor_date(self) -> date:
        """The date the recurrence pattern is defined relative to."""
        return self.recurrence_anchor or self.due_date

    @property
    def completion_state(self) -> Literal["pending", "completed"]:
        return "completed" if self.status == "completed" else "pending"

    def audience(self) -> Tuple[str, ...]:
        """Users whose views contain this reminder."""
        return tuple(sorted({self.user_id, *self.assigned_to}))

    # --- persistence --------------------------------------------------------

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, data: Dict[str, Any], item_id: Optional[str] = None) -> "ReminderItem":
        if item_id is not None:
            data = {**data, "item_id": item_id}
        return cls.model_validate(data)


class ReminderUpdate(BaseModel):
    """Partial edit of a scheduled reminder. Only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    due_time: Optional[time] = None
    timezone: Optional[str] = None
    recurrence: Optional[RecurrenceRule] = None
    notification_policy: Optional[NotificationPolicy] = None
    assigned_to: Optional[List[str]] = None
    shared_with_family: Optional[bool] = None

    # field changes that invalidate already-computed fire times
    TIMING_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"due_date", "due_time", "timezone", "notification_policy"})

    @field_validator("due_time", mode="before")
    @classmethod
    def _parse_due_time(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_time_of_day(v) if v.strip() else None
        return v

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_timezone(v):
            raise ValueError(f"unknown timezone: {v}")
        return v

    def changes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}

    def touches_timing(self) -> bool:
        return bool(self.TIMING_FIELDS & set(self.model_fields_set))
