"""Family reminder cache: hits, TTL, invalidation races, visibility and the change feed."""

import asyncio
from datetime import timedelta

import pytest

from cache.reminder_cache import FamilyReminderCache, cache_key
from conftest import make_reminder
from models.family import FamilyMember
from store.memory_store import InMemoryReminderStore


class CountingStore(InMemoryReminderStore):
    def __init__(self, clock):
        super().__init__(clock)
        self.queries = 0

    async def query_by_owner(self, user_id, page, page_size, *, family=None):
        self.queries += 1
        return await super().query_by_owner(user_id, page, page_size, family=family)


class GatedStore(CountingStore):
    """Holds every query until `gate` is set, so a test can interleave an invalidation."""

    def __init__(self, clock):
        super().__init__(clock)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def query_by_owner(self, user_id, page, page_size, *, family=None):
        self.entered.set()
        await self.gate.wait()
        return await super().query_by_owner(user_id, page, page_size, family=family)


async def _seed(store, clock, n, **overrides):
    ids = []
    for i in range(n):
        clock.advance(timedelta(seconds=1))
        overrides.setdefault("status", "scheduled")
        ids.append(await store.create(make_reminder(title=f"r{i}", **overrides)))
    return ids


@pytest.fixture
def counting_store(clock):
    return CountingStore(clock)


@pytest.fixture
def counting_cache(counting_store, family, clock):
    c = FamilyReminderCache(counting_store, family, clock, ttl_seconds=300, page_size=2).init()
    yield c
    c.dispose()


def test_cache_key():
    assert cache_key("alice", None) == "alice"
    assert cache_key("alice", "fam1") == "alice_fam1"


class TestReadPath:
    @pytest.mark.asyncio
    async def test_second_read_is_a_hit(self, counting_cache, counting_store, clock):
        await _seed(counting_store, clock, 3)

        first = await counting_cache.get("alice")
        second = await counting_cache.get("alice")

        assert counting_store.queries == 1
        assert first == second
        assert first.total_count == 3
        assert first.has_more
        assert len(first.items) == 2

    @pytest.mark.asyncio
    async def test_pages_are_cached_separately(self, counting_cache, counting_store, clock):
        await _seed(counting_store, clock, 3)

        p0 = await counting_cache.get("alice", page=0)
        p1 = await counting_cache.get("alice", page=1)
        await counting_cache.get("alice", page=1)

        assert counting_store.queries == 2
        assert len(p1.items) == 1
        assert not p1.has_more
        assert [r.item_id for r in counting_cache.loaded_items("alice")] == [r.item_id for r in p0.items + p1.items]

    @pytest.mark.asyncio
    async def test_newest_first(self, counting_cache, counting_store, clock):
        ids = await _seed(counting_store, clock, 2)

        page = await counting_cache.get("alice")

        assert [r.item_id for r in page.items] == list(reversed(ids))

    @pytest.mark.asyncio
    async def test_ttl_expiry_refetches(self, counting_cache, counting_store, clock):
        await _seed(counting_store, clock, 1)
        await counting_cache.get("alice")

        clock.advance(timedelta(seconds=301))
        await counting_cache.get("alice")

        assert counting_store.queries == 2

    @pytest.mark.asyncio
    async def test_bypass_cache(self, counting_cache, counting_store, clock):
        await _seed(counting_store, clock, 1)
        await counting_cache.get("alice")

        await counting_cache.get("alice", use_cache=False)

        assert counting_store.queries == 2

    @pytest.mark.asyncio
    async def test_inactive_cache_passes_through(self, counting_store, family, clock):
        cache = FamilyReminderCache(counting_store, family, clock)

        await cache.get("alice")
        await cache.get("alice")

        assert counting_store.queries == 2
        assert cache.stats()["entries"] == 0


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_drops_every_page_and_scope(self, counting_cache, counting_store, clock):
        await _seed(counting_store, clock, 3)
        await counting_cache.get("alice", page=0)
        await counting_cache.get("alice", page=1)
        await counting_cache.get("alice", "fam1")

        counting_cache.invalidate("alice")

        assert counting_cache.stats()["entries"] == 0
        await counting_cache.get("alice")
        assert counting_store.queries == 4

    @pytest.mark.asyncio
    async def test_read_after_invalidate_sees_the_write(self, cache, store, clock):
        await _seed(store, clock, 1)
        await cache.get("alice")

        await store.create(make_reminder(title="fresh", status="scheduled"))
        cache.invalidate("alice")

        page = await cache.get("alice")
        assert page.total_count == 2

    @pytest.mark.asyncio
    async def test_invalidation_during_fetch_is_not_stored(self, family, clock):
        store = GatedStore(clock)
        await _seed(store, clock, 1)
        cache = FamilyReminderCache(store, family, clock, page_size=2).init()

        fetch = asyncio.create_task(cache.get("alice"))
        await store.entered.wait()
        cache.invalidate("alice")
        store.gate.set()
        stale = await fetch

        assert stale.total_count == 1
        assert cache.stats()["entries"] == 0

        # a fetch that started after the mark is stored normally
        await cache.get("alice")
        assert cache.stats()["entries"] == 1
        cache.dispose()

    @pytest.mark.asyncio
    async def test_family_invalidation(self, counting_cache, counting_store, clock):
        await _seed(counting_store, clock, 1)
        await counting_cache.get("alice", "fam1")
        await counting_cache.get("alice")

        counting_cache.invalidate_family("fam1")

        assert counting_cache.stats()["keys"] == ["alice"]

    @pytest.mark.asyncio
    async def test_membership_change_refreshes_visibility(self, cache, store, family, family_members, clock):
        await _seed(store, clock, 1, user_id="bob", family_id="fam1", shared_with_family=True)
        assert (await cache.get("alice", "fam1")).total_count == 1

        family.set_members([m for m in family_members if m.user_id != "bob"])
        await cache.on_membership_changed("fam1")

        assert (await cache.get("alice", "fam1")).total_count == 0

    @pytest.mark.asyncio
    async def test_lifecycle_invalidates_audience(self, lifecycle, cache):
        created = await lifecycle.create(make_reminder(assigned_to=["bob"]))
        assert (await cache.get("bob")).total_count == 1

        await lifecycle.delete(created.reminder.item_id)

        assert (await cache.get("bob")).total_count == 0
        assert (await cache.get("alice")).total_count == 0


class TestFamilyVisibility:
    @pytest.mark.asyncio
    async def test_owner_and_admin_see_shared(self, cache, store, clock):
        await _seed(store, clock, 1, user_id="bob", family_id="fam1", shared_with_family=True)

        assert (await cache.get("alice", "fam1")).total_count == 1
        assert (await cache.get("carol", "fam1")).total_count == 1

    @pytest.mark.asyncio
    async def test_member_does_not_see_unassigned_reminders(self, cache, store, clock):
        await _seed(store, clock, 1, user_id="alice", family_id="fam1", shared_with_family=True)

        assert (await cache.get("bob", "fam1")).total_count == 0

    @pytest.mark.asyncio
    async def test_assignment_makes_visible(self, cache, store, clock):
        await _seed(store, clock, 1, user_id="alice", family_id="fam1", assigned_to=["bob"])

        assert (await cache.get("bob", "fam1")).total_count == 1

    @pytest.mark.asyncio
    async def test_unshared_reminders_stay_private(self, cache, store, clock):
        await _seed(store, clock, 1, user_id="bob", family_id="fam1")

        assert (await cache.get("alice", "fam1")).total_count == 0

    @pytest.mark.asyncio
    async def test_non_member_gets_empty_page(self, counting_cache, counting_store, clock):
        await _seed(counting_store, clock, 1, user_id="mallory")

        page = await counting_cache.get("mallory", "fam1")

        assert page.total_count == 0
        assert counting_store.queries == 0

    @pytest.mark.asyncio
    async def test_outsiders_shared_items_are_ignored(self, cache, store, family, family_members, clock):
        family.set_members(family_members + [FamilyMember(user_id="dave", family_id="fam2")])
        await _seed(store, clock, 1, user_id="dave", family_id="fam2", shared_with_family=True)

        assert (await cache.get("alice", "fam1")).total_count == 0


class TestChangeFeed:
    @pytest.mark.asyncio
    async def test_feed_replaces_cache_and_notifies(self, cache, store, clock):
        await _seed(store, clock, 1)

        async with await cache.on_change("alice") as feed:
            initial = await feed.next(timeout=1)
            assert len(initial) == 1

            await _seed(store, clock, 2)
            latest = await feed.next(timeout=1)
            while len(latest) < 3:
                latest = await feed.next(timeout=1)

            page = await cache.get("alice")
            assert page.total_count == 3
            assert [r.item_id for r in cache.loaded_items("alice")] == [r.item_id for r in latest]

    @pytest.mark.asyncio
    async def test_cancel_unsubscribes_from_store(self, cache, store):
        first = await cache.on_change("alice")
        second = await cache.on_change("alice")
        assert store.subscriber_count == 1
        assert cache.stats()["feeds"] == ["alice"]

        first.cancel()
        assert store.subscriber_count == 1

        second.cancel()
        assert store.subscriber_count == 0
        assert cache.stats()["feeds"] == []

        assert second.closed

    @pytest.mark.asyncio
    async def test_dispose_closes_feeds(self, store, family, clock):
        cache = FamilyReminderCache(store, family, clock).init()
        feed = await cache.on_change("alice", "fam1")

        cache.dispose()

        assert feed.closed
        assert store.subscriber_count == 0
        assert not cache.active


class TestStats:
    @pytest.mark.asyncio
    async def test_hit_rate(self, counting_cache, counting_store, clock):
        await _seed(counting_store, clock, 1)
        await counting_cache.get("alice")
        await counting_cache.get("alice")

        stats = counting_cache.stats()

        assert stats["active"] is True
        assert stats["keys"] == ["alice"]
        perf = stats["performance"]
        assert perf["total_measurements"] == 2
        assert perf["cache_hit_rate"] == 0.5
