from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from cache.reminder_cache import FamilyReminderCache
from models.notification import ReconcileResult, TeardownResult
from models.recurrence import EndKind
from models.reminder_item import ReminderItem, ReminderUpdate
from observability.obs import span_meta, span_step
from shared.errors import (
    InvalidRecurrenceError,
    InvalidRuleError,
    InvalidTransitionError,
    ReminderNotFoundError,
    StoreConflictError,
)
from shared.notification_sync import NotificationSynchronizer
from shared.recurrence import first_occurrence_on_or_after, next_occurrence
from shared.time import Clock, system_clock
from store.base import ReminderStore

logger = logging.getLogger(__name__)

# edits that change what the notification text says
_PAYLOAD_FIELDS = frozenset({"title", "description"})


class TransitionResult(BaseModel):
    """
    Outcome of a transition that was applied. Rejected transitions raise
    instead; a non-empty `warnings` means the record is durable but some
    notification side effect did not fully apply.
    """

    reminder: ReminderItem
    successor: Optional[ReminderItem] = None
    scheduled_count: int = 0
    cancelled_count: int = 0
    warnings: List[str] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    def absorb(self, outcome) -> None:
        if isinstance(outcome, ReconcileResult):
            self.scheduled_count += outcome.scheduled_count
            self.cancelled_count += outcome.cancelled_count
            self.warnings.extend(outcome.errors)
        elif isinstance(outcome, TeardownResult):
            self.cancelled_count += outcome.cancelled_count
            self.warnings.extend(outcome.warnings())


class SeriesDeleteResult(BaseModel):
    """Per-instance outcome of deleting a whole recurring series."""

    series_id: str
    deleted: List[str] = Field(default_factory=list)
    # instance id -> why it is still stored
    failed: Dict[str, str] = Field(default_factory=dict)
    cancelled_count: int = 0
    warnings: List[str] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.failed or self.warnings)


def _series_exhausted(item: ReminderItem) -> bool:
    """after_count(n) counts materialized instances: the n-th one has no successor."""
    end = item.recurrence.end_condition
    return end.kind == EndKind.AFTER_COUNT and item.occurrence_index >= end.count


class ReminderLifecycle:
    """
    draft -> scheduled -> completed | deleted, for one reminder instance at a time.

    Each transition persists the record first, then reconciles notifications,
    then invalidates the cache for everyone who can see the reminder. Store
    conflicts propagate to the caller untouched; notification problems are
    reported as warnings on an otherwise successful result.
    """

    def __init__(
        self,
        store: ReminderStore,
        synchronizer: NotificationSynchronizer,
        cache: Optional[FamilyReminderCache] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.synchronizer = synchronizer
        self.cache = cache
        self.clock = clock

    # --- helpers ------------------------------------------------------------------

    async def _load(self, reminder_id: str) -> ReminderItem:
        item = await self.store.get_by_id(reminder_id)
        if item is None:
            raise ReminderNotFoundError(reminder_id)
        return item

    async def _reconcile(self, item: ReminderItem, result: TransitionResult) -> None:
        try:
            result.absorb(await self.synchronizer.reconcile(item))
        except Exception as e:
            # advisory; the record is already durable
            logger.exception("[LIFECYCLE] reconcile failed for %s", item.item_id)
            result.warnings.append(f"reconcile failed for {item.item_id}: {e}")

    async def _teardown(self, item: ReminderItem, result: TransitionResult) -> None:
        try:
            known = self.synchronizer.identifiers_for(item)
            result.absorb(await self.synchronizer.teardown(item.item_id, known))
        except Exception as e:
            logger.exception("[LIFECYCLE] teardown failed for %s", item.item_id)
            result.warnings.append(f"teardown failed for {item.item_id}: {e}")

    def _invalidate(self, items: Iterable[Optional[ReminderItem]]) -> None:
        if self.cache is None:
            return
        users: List[str] = []
        families: List[str] = []
        for item in items:
            if item is None:
                continue
            users.extend(item.audience())
            if item.family_id:
                families.append(item.family_id)
        try:
            self.cache.invalidate_users(users)
            for family_id in dict.fromkeys(families):
                self.cache.invalidate_family(family_id)
        except Exception:
            logger.warning("[LIFECYCLE] cache invalidation failed", exc_info=True)

    # --- transitions --------------------------------------------------------------

    async def create(self, item: ReminderItem, start_date: Optional[date] = None) -> TransitionResult:
        """
        draft -> scheduled. For a recurring item the due date becomes the first
        occurrence on/after `start_date` (default: the item's due date), and the
        series anchor stays at the start date.
        """
        if item.status != "draft":
            raise InvalidTransitionError(f"cannot create a reminder in state {item.status}")

        with span_step("lifecycle.create", kind="LifecycleError", user_id=item.user_id) as s:
            fields = {"status": "scheduled"}
            if item.is_recurring:
                start = start_date or item.recurrence_anchor or item.due_date
                anchor = item.recurrence_anchor or start
                try:
                    first = first_occurrence_on_or_after(item.recurrence, anchor, start)
                except (InvalidRuleError, ValueError, OverflowError) as e:
                    raise InvalidRecurrenceError(f"cannot compute first occurrence: {e}", cause=e) from e
                if first is None:
                    raise InvalidRecurrenceError(f"recurrence ends before its first occurrence on/after {start}")
                fields.update(
                    due_date=first,
                    recurrence_anchor=anchor,
                    series_id=item.series_id or uuid.uuid4().hex,
                    occurrence_index=1,
                )
            draft = item.model_copy(update=fields)

            reminder_id = await self.store.create(draft)
            stored = await self._load(reminder_id)
            result = TransitionResult(reminder=stored)

            await self._reconcile(stored, result)
            self._invalidate([stored])
            span_meta(s, reminder_id=reminder_id, warnings=len(result.warnings))

        logger.info("[LIFECYCLE] created %s due %s (%s notifications)",
                    reminder_id, stored.due_date, result.scheduled_count)
        return result

    async def update(
        self,
        reminder_id: str,
        changes: ReminderUpdate,
        *,
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """
        Edit a scheduled reminder. Timing or text edits tear down every
        notification and schedule the new set; nothing is patched in place.
        """
        with span_step("lifecycle.update", kind="LifecycleError", reminder_id=reminder_id):
            current = await self._load(reminder_id)
            if current.status != "scheduled":
                raise InvalidTransitionError(f"reminder {reminder_id} is {current.status}, only scheduled reminders can be edited")

            fields = changes.changes()
            if not fields:
                return TransitionResult(reminder=current)

            will_recur = fields.get("recurrence", current.recurrence) is not None
            if will_recur and ("due_date" in fields or current.recurrence is None):
                # moving the due date re-anchors the series
                fields["recurrence_anchor"] = fields.get("due_date", current.due_date)
                if current.series_id is None:
                    fields["series_id"] = uuid.uuid4().hex
            if "recurrence" in fields and fields["recurrence"] is None:
                fields.update(recurrence_anchor=None, series_id=None, occurrence_index=1)

            version = current.version if expected_version is None else expected_version
            updated = await self.store.update(reminder_id, fields, expected_version=version)
            result = TransitionResult(reminder=updated)

            if changes.touches_timing() or _PAYLOAD_FIELDS & set(fields):
                await self._teardown(current, result)
            await self._reconcile(updated, result)
            self._invalidate([current, updated])

        logger.info("[LIFECYCLE] updated %s fields=%s", reminder_id, sorted(fields))
        return result

    async def complete(self, reminder_id: str, *, expected_version: Optional[int] = None) -> TransitionResult:
        """
        scheduled -> completed. A recurring instance yields at most one
        successor, computed from the series anchor; the completed instance is
        kept as history.

        The successor is written before the status flips. If either write
        fails the instance is still scheduled, and a retry finds the same
        successor through its op_id instead of forking the series.
        """
        with span_step("lifecycle.complete", kind="LifecycleError", reminder_id=reminder_id) as s:
            current = await self._load(reminder_id)
            if current.status != "scheduled":
                raise InvalidTransitionError(f"reminder {reminder_id} is {current.status}, cannot complete")
            version = current.version if expected_version is None else expected_version
            if version != current.version:
                raise StoreConflictError(reminder_id, version, current.version)

            # computed before any write: a bad rule leaves the reminder untouched
            next_date: Optional[date] = None
            if current.is_recurring and not _series_exhausted(current):
                try:
                    next_date = next_occurrence(
                        current.recurrence, current.anchor_date, current.due_time, from_date=current.due_date
                    )
                except (InvalidRuleError, ValueError, OverflowError) as e:
                    raise InvalidRecurrenceError(f"cannot compute next occurrence: {e}", cause=e) from e

            successor: Optional[ReminderItem] = None
            if next_date is not None:
                successor_id = await self.store.create(ReminderItem(
                    user_id=current.user_id,
                    title=current.title,
                    description=current.description,
                    status="scheduled",
                    op_id=f"successor:{reminder_id}",
                    due_date=next_date,
                    due_time=current.due_time,
                    timezone=current.timezone,
                    recurrence=current.recurrence,
                    recurrence_anchor=current.anchor_date,
                    series_id=current.series_id or reminder_id,
                    occurrence_index=current.occurrence_index + 1,
                    notification_policy=current.notification_policy,
                    assigned_to=current.assigned_to,
                    family_id=current.family_id,
                    shared_with_family=current.shared_with_family,
                ))
                successor = await self._load(successor_id)

            completed = await self.store.update(
                reminder_id,
                {"status": "completed", "completed_at": self.clock.now()},
                expected_version=version,
            )

            result = TransitionResult(reminder=completed, successor=successor)
            await self._teardown(current, result)
            if successor is not None:
                await self._reconcile(successor, result)
            self._invalidate([completed, successor])
            span_meta(s, successor=successor.item_id if successor else None, warnings=len(result.warnings))

        if successor is not None:
            logger.info("[LIFECYCLE] completed %s, next occurrence %s on %s",
                        reminder_id, successor.item_id, successor.due_date)
        else:
            logger.info("[LIFECYCLE] completed %s, no successor", reminder_id)
        return result

    async def delete(self, reminder_id: str) -> TransitionResult:
        """
        Remove the record, then clean up its notifications. Cleanup problems
        are reported, never rolled back into the deletion. Already
        materialized successors are not touched.
        """
        with span_step("lifecycle.delete", kind="LifecycleError", reminder_id=reminder_id) as s:
            current = await self._load(reminder_id)
            if current.status == "draft":
                raise InvalidTransitionError(f"reminder {reminder_id} was never scheduled")

            await self.store.delete(reminder_id)
            result = TransitionResult(reminder=current.model_copy(update={"status": "deleted"}))

            await self._teardown(current, result)
            self._invalidate([current])
            span_meta(s, cancelled=result.cancelled_count, warnings=len(result.warnings))

        logger.info("[LIFECYCLE] deleted %s (%s notifications cancelled, %s warnings)",
                    reminder_id, result.cancelled_count, len(result.warnings))
        return result

    async def delete_series(self, series_id: str) -> SeriesDeleteResult:
        """
        Delete every stored instance of a recurring series, completed history
        included. Each instance goes through the same record-then-cleanup
        path as `delete`; one instance failing does not stop the rest.
        """
        with span_step("lifecycle.delete_series", kind="LifecycleError", series_id=series_id) as s:
            instances = await self.store.query_by_series(series_id)
            if not instances:
                raise ReminderNotFoundError(series_id)

            result = SeriesDeleteResult(series_id=series_id)
            for item in instances:
                try:
                    await self.store.delete(item.item_id)
                except Exception as e:
                    # record and notifications both stay, so a retry starts clean
                    logger.exception("[LIFECYCLE] series %s: delete failed for %s", series_id, item.item_id)
                    result.failed[item.item_id] = str(e)
                    continue
                result.deleted.append(item.item_id)

                step = TransitionResult(reminder=item)
                await self._teardown(item, step)
                result.cancelled_count += step.cancelled_count
                result.warnings.extend(step.warnings)

            self._invalidate(instances)
            span_meta(s, deleted=len(result.deleted), failed=len(result.failed), warnings=len(result.warnings))

        logger.info("[LIFECYCLE] deleted series %s: %s deleted, %s failed, %s notifications cancelled",
                    series_id, len(result.deleted), len(result.failed), result.cancelled_count)
        return result

    async def resync(self, reminder_id: str) -> TransitionResult:
        """Re-run reconciliation, e.g. after a transport outage reported as a warning."""
        current = await self._load(reminder_id)
        result = TransitionResult(reminder=current)
        await self._reconcile(current, result)
        return result
