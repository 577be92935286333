from __future__ import annotations

from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Any, Iterable, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from shared.errors import InvalidRuleError


class RecurrenceKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    WEEKLY_ON_DAYS = "weekly-on-days"
    ORDINAL_WEEKDAY = "ordinal-weekday-of-month"


class Weekday(IntEnum):
    """Python numbering: Monday=0 ... Sunday=6 (same as date.weekday())."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class Ordinal(str, Enum):
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    FOURTH = "fourth"
    LAST = "last"

    @property
    def position(self) -> int:
        """1..4 for first..fourth, -1 for last."""
        return {"first": 1, "second": 2, "third": 3, "fourth": 4, "last": -1}[self.value]


class EndKind(str, Enum):
    NEVER = "never"
    AFTER_DATE = "after_date"
    AFTER_COUNT = "after_count"


DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

# repeatPattern values written by the mobile clients
LEGACY_PATTERNS = (
    "daily", "weekly", "monthly", "yearly", "weekdays", "weekends",
    "custom", "first_monday", "last_friday",
)


def _coerce_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s).date() if "T" in s else date.fromisoformat(s)
    except ValueError as e:
        raise InvalidRuleError(f"invalid end date: {value!r}") from e


class EndCondition(BaseModel):
    """Exactly one variant is active: never, after_date(until) or after_count(count)."""

    model_config = ConfigDict(frozen=True)

    kind: EndKind = EndKind.NEVER
    until: Optional[date] = None
    count: Optional[int] = None

    @model_validator(mode="after")
    def _check_variant(self) -> "EndCondition":
        if self.kind == EndKind.NEVER:
            if self.until is not None or self.count is not None:
                raise InvalidRuleError("end condition 'never' cannot carry a date or count")
        elif self.kind == EndKind.AFTER_DATE:
            if self.until is None:
                raise InvalidRuleError("end condition 'after_date' requires a date")
            if self.count is not None:
                raise InvalidRuleError("end condition cannot be both 'after_date' and 'after_count'")
        elif self.kind == EndKind.AFTER_COUNT:
            if self.count is None or self.count < 1:
                raise InvalidRuleError("end condition 'after_count' requires a count >= 1")
            if self.until is not None:
                raise InvalidRuleError("end condition cannot be both 'after_date' and 'after_count'")
        return self

    @classmethod
    def never(cls) -> "EndCondition":
        return cls()

    @classmethod
    def after_date(cls, until: Union[str, date, datetime]) -> "EndCondition":
        return cls(kind=EndKind.AFTER_DATE, until=_coerce_date(until))

    @classmethod
    def after_count(cls, count: int) -> "EndCondition":
        return cls(kind=EndKind.AFTER_COUNT, count=count)


class RecurrenceRule(BaseModel):
    """
    Immutable description of how a reminder repeats.

    Construction validates the rule; a malformed rule raises InvalidRuleError
    instead of being silently coerced (interval 0 is never treated as 1).
    """

    model_config = ConfigDict(frozen=True)

    kind: RecurrenceKind
    interval: int = 1
    days_of_week: Optional[Tuple[Weekday, ...]] = None
    ordinal: Optional[Ordinal] = None
    weekday: Optional[Weekday] = None
    end_condition: EndCondition = EndCondition()

    @field_validator("days_of_week", mode="before")
    @classmethod
    def _normalize_days(cls, v: Any) -> Any:
        if v is None:
            return None
        try:
            days = [int(d) for d in v]
        except (TypeError, ValueError) as e:
            raise InvalidRuleError(f"days_of_week must be weekday indices: {v!r}") from e
        for d in days:
            if d < 0 or d > 6:
                raise InvalidRuleError(f"weekday index out of range 0..6: {d}")
        return tuple(sorted(set(days)))

    @model_validator(mode="after")
    def _check_rule(self) -> "RecurrenceRule":
        if self.interval <= 0:
            raise InvalidRuleError(f"interval must be a positive integer, got {self.interval}")

        if self.kind == RecurrenceKind.WEEKLY_ON_DAYS:
            if not self.days_of_week:
                raise InvalidRuleError("weekly-on-days requires a non-empty days_of_week")
        elif self.days_of_week is not None:
            raise InvalidRuleError(f"days_of_week is only valid for weekly-on-days, not {self.kind.value}")

        if self.kind == RecurrenceKind.ORDINAL_WEEKDAY:
            if self.ordinal is None or self.weekday is None:
                raise InvalidRuleError("ordinal-weekday-of-month requires ordinal and weekday")
        elif self.ordinal is not None or self.weekday is not None:
            raise InvalidRuleError(f"ordinal/weekday are only valid for ordinal-weekday-of-month, not {self.kind.value}")
        return self

    # --- construction helpers ---------------------------------------------

    @classmethod
    def parse(cls, data: Any) -> "RecurrenceRule":
        """Build from an untrusted mapping; every failure surfaces as InvalidRuleError."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidRuleError(f"malformed recurrence rule: {e.errors()[0].get('msg', e)}") from e

    @classmethod
    def weekdays(cls, interval: int = 1, end_condition: Optional[EndCondition] = None) -> "RecurrenceRule":
        return cls(
            kind=RecurrenceKind.WEEKLY_ON_DAYS,
            interval=interval,
            days_of_week=(0, 1, 2, 3, 4),
            end_condition=end_condition or EndCondition(),
        )

    @classmethod
    def weekends(cls, interval: int = 1, end_condition: Optional[EndCondition] = None) -> "RecurrenceRule":
        return cls(
            kind=RecurrenceKind.WEEKLY_ON_DAYS,
            interval=interval,
            days_of_week=(5, 6),
            end_condition=end_condition or EndCondition(),
        )

    @classmethod
    def from_repeat_pattern(
        cls,
        repeat_pattern: str,
        *,
        custom_interval: Optional[int] = None,
        repeat_days: Optional[Iterable[int]] = None,
        custom_frequency_type: Optional[str] = None,
        recurring_end_date: Union[str, date, datetime, None] = None,
        recurring_end_after: Optional[int] = None,
    ) -> "RecurrenceRule":
        """
        Translate the fields stored by the mobile clients into a rule.

        `repeat_days` uses the clients' numbering (0=Sunday); it is converted
        to Monday=0 here.
        """
        pattern = (repeat_pattern or "").strip().lower()
        if pattern not in LEGACY_PATTERNS:
            raise InvalidRuleError(f"unknown repeat pattern: {repeat_pattern!r}")

        interval = 1 if custom_interval is None else int(custom_interval)
        days = None
        if repeat_days:
            days = tuple(sorted({(int(d) - 1) % 7 for d in repeat_days}))

        if recurring_end_date and recurring_end_after:
            raise InvalidRuleError("recurrence cannot end both on a date and after a count")
        if recurring_end_date:
            end = EndCondition.after_date(recurring_end_date)
        elif recurring_end_after:
            end = EndCondition.after_count(int(recurring_end_after))
        else:
            end = EndCondition()

        if pattern == "weekdays":
            return cls.weekdays(end_condition=end)
        if pattern == "weekends":
            return cls.weekends(end_condition=end)
        if pattern == "first_monday":
            return cls(kind=RecurrenceKind.ORDINAL_WEEKDAY, interval=interval, ordinal=Ordinal.FIRST,
                       weekday=Weekday.MONDAY, end_condition=end)
        if pattern == "last_friday":
            return cls(kind=RecurrenceKind.ORDINAL_WEEKDAY, interval=interval, ordinal=Ordinal.LAST,
                       weekday=Weekday.FRIDAY, end_condition=end)

        base = pattern
        if pattern == "custom":
            base = (custom_frequency_type or "daily").strip().lower()
            if base not in ("daily", "weekly", "monthly", "yearly"):
                raise InvalidRuleError(f"unknown custom frequency: {custom_frequency_type!r}")

        if base == "weekly" and days:
            return cls(kind=RecurrenceKind.WEEKLY_ON_DAYS, interval=interval, days_of_week=days, end_condition=end)
        return cls(kind=RecurrenceKind(base), interval=interval, end_condition=end)

    # --- presentation -----------------------------------------------------

    def describe(self) -> str:
        n = self.interval
        if self.kind == RecurrenceKind.DAILY:
            text = "Daily" if n == 1 else f"Every {n} days"
        elif self.kind == RecurrenceKind.WEEKLY:
            text = "Weekly" if n == 1 else f"Every {n} weeks"
        elif self.kind == RecurrenceKind.WEEKLY_ON_DAYS:
            days = tuple(self.days_of_week or ())
            if days == (0, 1, 2, 3, 4) and n == 1:
                text = "Every weekday (Monday-Friday)"
            elif days == (5, 6) and n == 1:
                text = "Every weekend (Saturday-Sunday)"
            else:
                names = ", ".join(DAY_NAMES[d] for d in days)
                text = f"Weekly on {names}" if n == 1 else f"Every {n} weeks on {names}"
        elif self.kind == RecurrenceKind.MONTHLY:
            text = "Monthly" if n == 1 else f"Every {n} months"
        elif self.kind == RecurrenceKind.YEARLY:
            text = "Yearly" if n == 1 else f"Every {n} years"
        else:
            which = f"{self.ordinal.value} {DAY_NAMES[self.weekday]}"
            text = (f"{which[0].upper()}{which[1:]} of every month" if n == 1
                    else f"Every {n} months on the {which}")

        end = self.end_condition
        if end.kind == EndKind.AFTER_DATE:
            text += f", until {end.until.isoformat()}"
        elif end.kind == EndKind.AFTER_COUNT:
            text += f", {end.count} times"
        return text
