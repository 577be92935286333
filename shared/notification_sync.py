from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Dict, Iterable, List, Optional, Set, TypeVar

from models.notification import (
    NotificationRequest,
    ReconcileResult,
    ScheduledNotification,
    TeardownResult,
    identifier_prefix,
    notification_identifier,
)
from models.reminder_item import NotificationTiming, ReminderItem
from observability.obs import span_attrs, span_meta
from shared.delivery_mng import DeliveryTransport
from shared.errors import TransportUnavailableError
from shared.time import MINUTES_PER_DAY, Clock, system_clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TRANSPORT_TIMEOUT = 10.0

# relative lead times the clients render as "Due in ..."
_SHORT_LEADS = {15: "15 minutes", 30: "30 minutes", 60: "1 hour"}


def legacy_identifiers(reminder_id: str) -> List[str]:
    """Identifier shapes older clients registered for a reminder."""
    return [
        reminder_id,
        f"{reminder_id}-occurrence",
        f"{reminder_id}-notification",
        f"reminder-{reminder_id}",
    ]


def references_reminder(identifier: str, reminder_id: str) -> bool:
    """Pattern match used when the transport lost the owner metadata."""
    if identifier.startswith(identifier_prefix(reminder_id)):
        return True
    # legacy per-occurrence variants: "{id}-occurrence-2", "{id}-notification-1440"
    if identifier.startswith((f"{reminder_id}-occurrence", f"{reminder_id}-notification")):
        return True
    return identifier in legacy_identifiers(reminder_id)


def notification_title(reminder: ReminderItem, timing: NotificationTiming) -> str:
    if timing.type == "before":
        return f"Reminder: {reminder.title}"
    if timing.type == "after":
        return f"Overdue: {reminder.title}"
    return f"Due Now: {reminder.title}"


def notification_body(reminder: ReminderItem, timing: NotificationTiming) -> str:
    hhmm = reminder.due_time.strftime("%H:%M") if reminder.due_time else None
    day = reminder.due_date.strftime("%d/%m/%Y")
    at = f" at {hhmm}" if hhmm else ""

    if timing.type == "before":
        lead = _SHORT_LEADS.get(timing.value)
        if lead:
            message = f"Due in {lead}" + (f" ({hhmm})" if hhmm else "")
        else:
            message = f"Due on {day}{at}"
    elif timing.type == "after":
        message = f"Was due on {day}{at}"
    else:
        message = "Due now" + (f" ({hhmm})" if hhmm else "")

    if reminder.description:
        message += f"\n{reminder.description}"
    return message


class NotificationSynchronizer:
    """
    Keeps the transport's registrations for a reminder equal to the set the
    reminder currently implies.

    Every transport call is individually time-bounded. Failures are collected
    into the result and never raised, so callers can report a degraded
    success; the next reconcile picks up whatever was missed.
    """

    def __init__(
        self,
        transport: DeliveryTransport,
        clock: Clock = system_clock,
        *,
        timeout: float = DEFAULT_TRANSPORT_TIMEOUT,
    ):
        self.transport = transport
        self.clock = clock
        self.timeout = timeout

    # --- desired set ----------------------------------------------------------

    def fire_at_for(self, reminder: ReminderItem, offset_minutes: int):
        """
        Fire instant for one offset. Whole-day offsets move the calendar date in
        the reminder's zone (so "1 day before 14:00" stays 14:00 across DST);
        anything else is subtracted from the due instant.
        """
        if offset_minutes and offset_minutes % MINUTES_PER_DAY == 0:
            day = reminder.due_date - timedelta(days=offset_minutes // MINUTES_PER_DAY)
            return self.clock.to_instant(day, reminder.due_time, reminder.timezone)
        due = self.clock.to_instant(reminder.due_date, reminder.due_time, reminder.timezone)
        return due - timedelta(minutes=offset_minutes)

    def identifiers_for(self, reminder: ReminderItem) -> List[str]:
        """All identifiers the reminder's policy could produce, past or future."""
        return [
            notification_identifier(reminder.item_id, reminder.due_date, t.offset_minutes)
            for t in reminder.notification_policy.timings
        ]

    def desired(self, reminder: ReminderItem) -> List[NotificationRequest]:
        if not reminder.item_id or reminder.status != "scheduled":
            return []
        policy = reminder.notification_policy
        if not policy.enabled:
            return []

        now = self.clock.now()
        out: List[NotificationRequest] = []
        for timing in policy.timings:
            offset = timing.offset_minutes
            fire_at = self.fire_at_for(reminder, offset)
            if fire_at <= now:
                continue
            out.append(NotificationRequest(
                identifier=notification_identifier(reminder.item_id, reminder.due_date, offset),
                reminder_id=reminder.item_id,
                anchor_date=reminder.due_date,
                offset_minutes=offset,
                fire_at=fire_at,
                title=notification_title(reminder, timing),
                body=notification_body(reminder, timing),
            ))
        return out

    # --- transport calls --------------------------------------------------------

    async def _bounded(self, operation: str, call: Awaitable[T], identifier: Optional[str] = None) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportUnavailableError(operation, f"timed out after {self.timeout}s", identifier=identifier) from e
        except TransportUnavailableError:
            raise
        except Exception as e:
            raise TransportUnavailableError(operation, str(e) or type(e).__name__, identifier=identifier) from e

    async def _list(self) -> List[ScheduledNotification]:
        return await self._bounded("list_scheduled", self.transport.list_scheduled())

    async def _cancel(self, identifier: str) -> None:
        await self._bounded("cancel", self.transport.cancel(identifier), identifier)

    async def _schedule(self, req: NotificationRequest) -> None:
        await self._bounded(
            "schedule",
            self.transport.schedule(req.identifier, req.fire_at, req.title, req.body, req.metadata()),
            req.identifier,
        )

    # --- reconcile --------------------------------------------------------------

    async def reconcile(self, reminder: ReminderItem) -> ReconcileResult:
        reminder_id = reminder.item_id or ""
        result = ReconcileResult(reminder_id=reminder_id)
        if not reminder_id:
            result.errors.append("reminder has no id")
            return result

        with span_attrs("notify.reconcile", reminder_id=reminder_id) as s:
            desired: Dict[str, NotificationRequest] = {r.identifier: r for r in self.desired(reminder)}

            actual: Optional[Dict[str, ScheduledNotification]]
            try:
                prefix = identifier_prefix(reminder_id)
                actual = {n.identifier: n for n in await self._list() if n.identifier.startswith(prefix)}
            except TransportUnavailableError as e:
                # duplicate schedules are harmless, so still push the desired set
                logger.warning("[NOTIFY] %s", e)
                result.errors.append(str(e))
                actual = None

            to_cancel: List[str] = []
            to_schedule: List[NotificationRequest] = []
            if actual is None:
                to_schedule = list(desired.values())
            else:
                for identifier, entry in actual.items():
                    want = desired.get(identifier)
                    if want is None:
                        to_cancel.append(identifier)
                    elif want.fire_at != entry.fire_at:
                        # same occurrence/offset but the due instant moved
                        to_cancel.append(identifier)
                        to_schedule.append(want)
                    else:
                        result.unchanged_count += 1
                to_schedule.extend(r for i, r in desired.items() if i not in actual)

            for identifier in to_cancel:
                try:
                    await self._cancel(identifier)
                    result.cancelled_count += 1
                except TransportUnavailableError as e:
                    logger.warning("[NOTIFY] %s", e)
                    result.errors.append(str(e))

            for req in to_schedule:
                try:
                    await self._schedule(req)
                    result.scheduled_count += 1
                except TransportUnavailableError as e:
                    logger.warning("[NOTIFY] %s", e)
                    result.errors.append(str(e))

            span_meta(
                s,
                scheduled=result.scheduled_count,
                cancelled=result.cancelled_count,
                unchanged=result.unchanged_count,
                errors=len(result.errors),
            )

        logger.info(
            "[NOTIFY] reconcile %s: +%s -%s =%s (%s errors)",
            reminder_id, result.scheduled_count, result.cancelled_count,
            result.unchanged_count, len(result.errors),
        )
        return result

    # --- teardown ---------------------------------------------------------------

    async def teardown(self, reminder_id: str, known_identifiers: Optional[Iterable[str]] = None) -> TeardownResult:
        """
        Cancel everything registered for `reminder_id`.

        Three lookups run independently (owner metadata, exact ids, identifier
        pattern); a failure in one never stops the others. A final listing
        reports anything still registered as `remaining`.
        """
        result = TeardownResult(reminder_id=reminder_id)
        cancelled: Set[str] = set()

        with span_attrs("notify.teardown", reminder_id=reminder_id) as s:
            listed: Optional[List[ScheduledNotification]]
            try:
                listed = await self._list()
            except TransportUnavailableError as e:
                logger.warning("[NOTIFY] teardown %s: %s", reminder_id, e)
                result.errors.append(f"list: {e}")
                listed = None
            listed_ids = {n.identifier for n in listed} if listed is not None else None

            async def _run(strategy: str, identifiers: Iterable[str]) -> None:
                for identifier in identifiers:
                    if identifier in cancelled:
                        continue
                    try:
                        await self._cancel(identifier)
                    except TransportUnavailableError as e:
                        logger.warning("[NOTIFY] teardown %s (%s): %s", reminder_id, strategy, e)
                        result.errors.append(f"{strategy}: {e}")
                        continue
                    # blind cancels of ids the transport never listed are not counted
                    if listed_ids is None or identifier in listed_ids:
                        cancelled.add(identifier)

            if listed is not None:
                await _run("owner", [n.identifier for n in listed if n.owner_reminder_id == reminder_id])

            exact = list(known_identifiers or ()) + legacy_identifiers(reminder_id)
            await _run("exact", exact)

            if listed is not None:
                await _run("pattern", [n.identifier for n in listed if references_reminder(n.identifier, reminder_id)])

            result.cancelled_count = len(cancelled)
            result.remaining = await self._verify(reminder_id, result)
            span_meta(s, cancelled=result.cancelled_count, errors=len(result.errors), remaining=len(result.remaining))

        if result.remaining:
            logger.warning("[NOTIFY] teardown %s left %s registration(s): %s",
                           reminder_id, len(result.remaining), result.remaining)
        else:
            logger.info("[NOTIFY] teardown %s: cancelled %s", reminder_id, result.cancelled_count)
        return result

    async def _verify(self, reminder_id: str, result: TeardownResult) -> List[str]:
        try:
            listed = await self._list()
        except TransportUnavailableError as e:
            result.errors.append(f"verify: {e}")
            return []
        return sorted(
            n.identifier for n in listed
            if n.owner_reminder_id == reminder_id or references_reminder(n.identifier, reminder_id)
        )
