"""Notification synchronizer: desired set, reconcile idempotence, teardown strategies."""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import make_reminder
from models.notification import identifier_prefix, notification_identifier
from models.reminder_item import NotificationPolicy, NotificationTiming
from shared.notification_sync import (
    NotificationSynchronizer,
    notification_body,
    notification_title,
    references_reminder,
)
from shared.time import format_local


def _scheduled(**overrides):
    overrides.setdefault("item_id", "r1")
    overrides.setdefault("status", "scheduled")
    return make_reminder(**overrides)


class TestIdentifiers:
    def test_identifier_is_pure(self):
        a = notification_identifier("r1", date(2024, 1, 15), 15)
        b = notification_identifier("r1", date(2024, 1, 15), 15)

        assert a == b == "r1:2024-01-15:15"

    def test_identifier_differs_per_offset_and_occurrence(self):
        ids = {
            notification_identifier("r1", date(2024, 1, 15), 15),
            notification_identifier("r1", date(2024, 1, 15), 0),
            notification_identifier("r1", date(2024, 1, 16), 15),
            notification_identifier("r2", date(2024, 1, 15), 15),
        }
        assert len(ids) == 4

    def test_prefix_does_not_match_longer_ids(self):
        assert not notification_identifier("r10", date(2024, 1, 15), 0).startswith(identifier_prefix("r1"))


class TestDesired:
    def test_london_scenario(self, synchronizer):
        reminder = _scheduled()

        desired = synchronizer.desired(reminder)

        local = sorted(format_local(r.fire_at, "Europe/London") for r in desired)
        assert local == ["2024-01-14T14:00", "2024-01-15T13:45"]

    def test_day_offset_keeps_wall_time_across_dst(self, synchronizer):
        # clocks go forward on 2024-03-31 in London
        reminder = _scheduled(due_date=date(2024, 4, 1), due_time="09:00")

        by_offset = {r.offset_minutes: r for r in synchronizer.desired(reminder)}

        assert format_local(by_offset[1440].fire_at, "Europe/London") == "2024-03-31T09:00"
        assert format_local(by_offset[15].fire_at, "Europe/London") == "2024-04-01T08:45"

    def test_past_fire_times_are_skipped(self, synchronizer, clock):
        clock.set(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))

        desired = synchronizer.desired(_scheduled())

        assert [r.offset_minutes for r in desired] == [15]

    def test_disabled_policy(self, synchronizer):
        assert synchronizer.desired(_scheduled(notification_policy=NotificationPolicy.disabled())) == []

    def test_only_scheduled_reminders_notify(self, synchronizer):
        assert synchronizer.desired(_scheduled(status="completed")) == []

    def test_missing_due_time_anchors_at_midnight(self, synchronizer):
        reminder = _scheduled(due_time=None, notification_policy=NotificationPolicy(timings=(NotificationTiming.at_due_time(),)))

        (only,) = synchronizer.desired(reminder)

        assert format_local(only.fire_at, "Europe/London") == "2024-01-15T00:00"

    def test_overdue_timing_fires_after_due(self, synchronizer):
        reminder = _scheduled(notification_policy=NotificationPolicy(timings=(NotificationTiming.minutes_after(30),)))

        (only,) = synchronizer.desired(reminder)

        assert only.offset_minutes == -30
        assert format_local(only.fire_at, "Europe/London") == "2024-01-15T14:30"
        assert only.identifier == "r1:2024-01-15:-30"


class TestText:
    def test_titles(self):
        reminder = _scheduled(title="Dentist")
        assert notification_title(reminder, NotificationTiming.minutes_before(15)) == "Reminder: Dentist"
        assert notification_title(reminder, NotificationTiming.at_due_time()) == "Due Now: Dentist"
        assert notification_title(reminder, NotificationTiming.minutes_after(10)) == "Overdue: Dentist"

    def test_bodies(self):
        reminder = _scheduled(description="Bring the forms")
        assert notification_body(reminder, NotificationTiming.minutes_before(15)) == "Due in 15 minutes (14:00)\nBring the forms"
        assert notification_body(reminder, NotificationTiming.days_before(1)) == "Due on 15/01/2024 at 14:00\nBring the forms"
        assert notification_body(reminder, NotificationTiming.at_due_time()) == "Due now (14:00)\nBring the forms"


class TestReconcile:
    @pytest.mark.asyncio
    async def test_reconcile_twice_is_a_no_op(self, synchronizer, transport):
        reminder = _scheduled()

        first = await synchronizer.reconcile(reminder)
        second = await synchronizer.reconcile(reminder)

        assert (first.scheduled_count, first.cancelled_count) == (2, 0)
        assert (second.scheduled_count, second.cancelled_count) == (0, 0)
        assert second.unchanged_count == 2
        assert second.ok
        assert transport.schedule_calls == 2

    @pytest.mark.asyncio
    async def test_reconcile_cancels_extras_and_ignores_other_reminders(self, synchronizer, transport):
        await transport.schedule("r1:2024-01-10:60", datetime(2024, 1, 10, 13, tzinfo=timezone.utc), "t", "b")
        await transport.schedule("r10:2024-01-15:15", datetime(2024, 1, 15, 13, tzinfo=timezone.utc), "t", "b")

        result = await synchronizer.reconcile(_scheduled())

        assert result.cancelled_count == 1
        assert result.scheduled_count == 2
        assert "r10:2024-01-15:15" in transport.entries
        assert "r1:2024-01-10:60" not in transport.entries

    @pytest.mark.asyncio
    async def test_moved_due_time_reschedules(self, synchronizer, transport):
        await synchronizer.reconcile(_scheduled())

        result = await synchronizer.reconcile(_scheduled(due_time="16:30"))

        assert result.cancelled_count == 2
        assert result.scheduled_count == 2
        fire_times = sorted(format_local(n.fire_at, "Europe/London") for n in transport.entries.values())
        assert fire_times == ["2024-01-14T16:30", "2024-01-15T16:15"]

    @pytest.mark.asyncio
    async def test_transport_errors_are_reported_not_raised(self, synchronizer, transport):
        transport.fail_schedule.add("r1:2024-01-15:15")

        result = await synchronizer.reconcile(_scheduled())

        assert result.scheduled_count == 1
        assert len(result.errors) == 1
        assert "r1:2024-01-15:15" in result.errors[0]

        # recovery happens on the next reconcile
        transport.fail_schedule.clear()
        retry = await synchronizer.reconcile(_scheduled())
        assert (retry.scheduled_count, retry.unchanged_count) == (1, 1)

    @pytest.mark.asyncio
    async def test_timeouts_are_bounded(self, transport, clock):
        class SlowTransport(type(transport)):
            async def schedule(self, *args, **kwargs):
                await asyncio.sleep(5)

        sync = NotificationSynchronizer(SlowTransport(), clock, timeout=0.05)

        result = await sync.reconcile(_scheduled())

        assert result.scheduled_count == 0
        assert len(result.errors) == 2
        assert all("timed out" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_listing_failure_still_schedules(self, synchronizer, transport):
        transport.fail_list = True

        result = await synchronizer.reconcile(_scheduled())

        assert result.scheduled_count == 2
        assert len(result.errors) == 1


class TestTeardown:
    @pytest.mark.asyncio
    async def test_teardown_removes_everything_for_reminder(self, synchronizer, transport):
        await synchronizer.reconcile(_scheduled())
        await transport.schedule("r1-notification", datetime(2024, 1, 15, tzinfo=timezone.utc), "t", "b")
        await transport.schedule("other:2024-01-15:0", datetime(2024, 1, 15, tzinfo=timezone.utc), "t", "b")

        result = await synchronizer.teardown("r1")

        assert result.ok
        assert result.cancelled_count == 3
        assert list(transport.entries) == ["other:2024-01-15:0"]

    @pytest.mark.asyncio
    async def test_owner_metadata_strategy(self, synchronizer, transport):
        # identifier gives nothing away; only the metadata links it to r1
        await transport.schedule("xyz", datetime(2024, 1, 15, tzinfo=timezone.utc), "t", "b", {"reminderId": "r1"})

        result = await synchronizer.teardown("r1")

        assert result.cancelled_count == 1
        assert transport.entries == {}

    @pytest.mark.asyncio
    async def test_exact_ids_cancelled_when_listing_fails(self, synchronizer, transport):
        reminder = _scheduled()
        await synchronizer.reconcile(reminder)
        transport.fail_list = True

        result = await synchronizer.teardown("r1", synchronizer.identifiers_for(reminder))

        assert transport.entries == {}
        assert not result.ok
        assert any(e.startswith("list:") for e in result.errors)

    @pytest.mark.asyncio
    async def test_partial_failure_reports_remaining(self, synchronizer, transport):
        await synchronizer.reconcile(_scheduled())
        stuck = "r1:2024-01-15:15"
        transport.fail_cancel.add(stuck)

        result = await synchronizer.teardown("r1")

        assert result.cancelled_count == 1
        assert result.remaining == [stuck]
        assert result.errors
        assert any(stuck in w for w in result.warnings())

    @pytest.mark.asyncio
    async def test_teardown_of_unknown_reminder(self, synchronizer):
        result = await synchronizer.teardown("ghost")
        assert result.ok
        assert result.cancelled_count == 0


def test_fire_instants_are_utc(synchronizer):
    for req in synchronizer.desired(_scheduled(timezone="America/New_York")):
        assert req.fire_at.utcoffset() == timedelta(0)


class TestPatternMatch:
    def test_legacy_variants_match(self):
        for identifier in ("r1", "r1-occurrence", "r1-occurrence-2", "r1-notification-1440", "reminder-r1", "r1:2024-01-15:0"):
            assert references_reminder(identifier, "r1"), identifier

    def test_reminders_sharing_a_dash_prefix_do_not_match(self):
        assert not references_reminder("r1-b:2024-01-15:0", "r1")
        assert not references_reminder("r1-b", "r1")

    @pytest.mark.asyncio
    async def test_teardown_leaves_dash_prefixed_reminder_alone(self, synchronizer, transport):
        await transport.schedule("r1-b:2024-01-15:0", datetime(2024, 1, 15, tzinfo=timezone.utc), "t", "b",
                                 {"reminderId": "r1-b"})

        await synchronizer.teardown("r1")

        assert list(transport.entries) == ["r1-b:2024-01-15:0"]
