"""
Occurrence generator.

Pure functions turning a RecurrenceRule and an anchor date into due dates.
Every comparison is on calendar dates in the reminder's own zone; nothing
here looks at instants, the clock, or I/O.

Occurrences are always computed from the anchor (anchor + k * interval),
never from the previous occurrence, so month-end clamping cannot drift:
a rule anchored on Jan 31 yields Feb 29, Mar 31, Apr 30, ...
"""
from __future__ import annotations

from datetime import date, time, timedelta
from itertools import islice
from typing import Iterator, List, Optional

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

from models.recurrence import EndKind, Ordinal, RecurrenceKind, RecurrenceRule
from shared.time import ONE_DAY

_RD_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)


def _months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def _first_step(span: int, interval: int) -> int:
    # One step early so a clamped candidate in the current period is not skipped.
    return max(0, span // interval - 1)


def ordinal_weekday_of_month(year: int, month: int, ordinal: Ordinal, weekday: int) -> date:
    """The first..fourth or last `weekday` of the given month."""
    pos = ordinal.position
    if pos == -1:
        return date(year, month, 1) + relativedelta(day=31, weekday=_RD_WEEKDAYS[weekday](-1))
    return date(year, month, 1) + relativedelta(weekday=_RD_WEEKDAYS[weekday](+pos))


def _next_fixed_days(anchor: date, step_days: int, after: date) -> date:
    if after < anchor:
        return anchor
    n = (after - anchor).days // step_days + 1
    return anchor + timedelta(days=n * step_days)


def _next_on_days(rule: RecurrenceRule, anchor: date, after: date) -> date:
    days = set(int(d) for d in rule.days_of_week or ())
    interval = rule.interval
    week0 = anchor - timedelta(days=anchor.weekday())
    day = max(after + ONE_DAY, anchor)
    while True:
        week_idx = (day - week0).days // 7
        rem = week_idx % interval
        if rem:
            # inactive week of the cycle: jump to the start of the next active one
            day = week0 + timedelta(weeks=week_idx + interval - rem)
            continue
        week_end = week0 + timedelta(weeks=week_idx + 1)
        while day < week_end:
            if day.weekday() in days:
                return day
            day += ONE_DAY


def _next_monthly(anchor: date, interval: int, after: date) -> date:
    k = _first_step(_months_between(anchor, after), interval)
    while True:
        candidate = anchor + relativedelta(months=k * interval)
        if candidate > after:
            return candidate
        k += 1


def _next_yearly(anchor: date, interval: int, after: date) -> date:
    k = _first_step(after.year - anchor.year, interval)
    while True:
        candidate = anchor + relativedelta(years=k * interval)
        if candidate > after:
            return candidate
        k += 1


def _next_ordinal(rule: RecurrenceRule, anchor: date, after: date) -> date:
    month0 = anchor.replace(day=1)
    k = _first_step(_months_between(anchor, after), rule.interval)
    while True:
        month = month0 + relativedelta(months=k * rule.interval)
        candidate = ordinal_weekday_of_month(month.year, month.month, rule.ordinal, int(rule.weekday))
        if candidate > after:
            return candidate
        k += 1


def next_occurrence(
    rule: RecurrenceRule,
    anchor_date: date,
    anchor_time: Optional[time] = None,
    from_date: Optional[date] = None,
) -> Optional[date]:
    """
    Smallest occurrence strictly after `from_date` (default: the anchor), or
    None once an after_date end condition is passed.

    The anchor itself counts as an occurrence, so from_date=start-1 yields the
    first occurrence on/after `start`. Occurrences never precede the anchor.
    `anchor_time` does not influence the date sequence. after_count is not
    evaluated here; the caller tracks materialized occurrences.
    """
    if from_date is None:
        after = anchor_date
    else:
        after = max(from_date, anchor_date - ONE_DAY)

    kind = rule.kind
    if kind == RecurrenceKind.DAILY:
        candidate = _next_fixed_days(anchor_date, rule.interval, after)
    elif kind == RecurrenceKind.WEEKLY:
        candidate = _next_fixed_days(anchor_date, 7 * rule.interval, after)
    elif kind == RecurrenceKind.WEEKLY_ON_DAYS:
        candidate = _next_on_days(rule, anchor_date, after)
    elif kind == RecurrenceKind.MONTHLY:
        candidate = _next_monthly(anchor_date, rule.interval, after)
    elif kind == RecurrenceKind.YEARLY:
        candidate = _next_yearly(anchor_date, rule.interval, after)
    else:
        candidate = _next_ordinal(rule, anchor_date, after)

    end = rule.end_condition
    if end.kind == EndKind.AFTER_DATE and candidate > end.until:
        return None
    return candidate


def first_occurrence_on_or_after(rule: RecurrenceRule, anchor_date: date, start_date: date) -> Optional[date]:
    return next_occurrence(rule, anchor_date, from_date=start_date - ONE_DAY)


def iter_occurrences(
    rule: RecurrenceRule,
    anchor_date: date,
    until_date: Optional[date] = None,
) -> Iterator[date]:
    """Lazy, restartable (call again) sequence starting at the anchor itself if valid."""
    produced = 0
    limit = rule.end_condition.count if rule.end_condition.kind == EndKind.AFTER_COUNT else None
    cursor = anchor_date - ONE_DAY
    while limit is None or produced < limit:
        nxt = next_occurrence(rule, anchor_date, from_date=cursor)
        if nxt is None or (until_date is not None and nxt > until_date):
            return
        yield nxt
        produced += 1
        cursor = nxt


def generate_occurrences(
    rule: RecurrenceRule,
    anchor_date: date,
    max_count: int,
    until_date: Optional[date] = None,
) -> List[date]:
    """
    Preview helper: up to `max_count` occurrences in order.

    Not used for scheduling; production materializes one occurrence at a time.
    Honors after_count so a preview shows the real length of the series.
    """
    if max_count <= 0:
        return []
    return list(islice(iter_occurrences(rule, anchor_date, until_date), max_count))
