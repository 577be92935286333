import os

# keep Langfuse quiet and offline for the whole suite; must run before any observability import
os.environ.setdefault("LANGFUSE_TRACING_ENABLED", "false")

from datetime import date, datetime, timezone  # noqa: E402

import pytest  # noqa: E402

from cache.reminder_cache import FamilyReminderCache  # noqa: E402
from models.family import FamilyMember  # noqa: E402
from models.reminder_item import NotificationPolicy, NotificationTiming, ReminderItem  # noqa: E402
from shared.delivery_mng import InMemoryDeliveryTransport  # noqa: E402
from shared.lifecycle import ReminderLifecycle  # noqa: E402
from shared.notification_sync import NotificationSynchronizer  # noqa: E402
from shared.time import FixedClock  # noqa: E402
from store.memory_store import InMemoryFamilyProvider, InMemoryReminderStore  # noqa: E402

# 2024-01-10 09:00 UTC: comfortably before the scenario dates used in the tests
NOW = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


class FlakyTransport(InMemoryDeliveryTransport):
    """In-memory transport whose calls fail for chosen identifiers."""

    def __init__(self):
        super().__init__()
        self.fail_cancel: set = set()
        self.fail_schedule: set = set()
        self.fail_list = False

    async def schedule(self, identifier, fire_at, title, body, metadata=None):
        if identifier in self.fail_schedule:
            raise ConnectionError(f"push gateway rejected {identifier}")
        await super().schedule(identifier, fire_at, title, body, metadata)

    async def cancel(self, identifier):
        if identifier in self.fail_cancel:
            raise ConnectionError(f"push gateway rejected cancel of {identifier}")
        await super().cancel(identifier)

    async def list_scheduled(self):
        if self.fail_list:
            raise ConnectionError("push gateway unavailable")
        return await super().list_scheduled()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def store(clock):
    return InMemoryReminderStore(clock)


@pytest.fixture
def transport():
    return FlakyTransport()


@pytest.fixture
def synchronizer(transport, clock):
    return NotificationSynchronizer(transport, clock, timeout=0.5)


@pytest.fixture
def family_members():
    return [
        FamilyMember(user_id="alice", family_id="fam1", role="owner", display_name="Alice"),
        FamilyMember(user_id="bob", family_id="fam1", role="member", display_name="Bob"),
        FamilyMember(user_id="carol", family_id="fam1", role="admin", display_name="Carol"),
    ]


@pytest.fixture
def family(family_members):
    return InMemoryFamilyProvider(family_members)


@pytest.fixture
def cache(store, family, clock):
    c = FamilyReminderCache(store, family, clock, ttl_seconds=300, page_size=2).init()
    yield c
    c.dispose()


@pytest.fixture
def lifecycle(store, synchronizer, cache, clock):
    return ReminderLifecycle(store, synchronizer, cache, clock)


def make_reminder(**overrides) -> ReminderItem:
    data = dict(
        user_id="alice",
        title="Bins out",
        due_date=date(2024, 1, 15),
        due_time="14:00",
        timezone="Europe/London",
        notification_policy=NotificationPolicy(
            timings=(NotificationTiming.minutes_before(15), NotificationTiming.days_before(1)),
        ),
    )
    data.update(overrides)
    return ReminderItem(**data)
