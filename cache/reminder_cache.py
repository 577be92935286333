# cache/reminder_cache.py
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from models.family import CacheEntry, FamilyMember, ReminderPage
from models.reminder_item import ReminderItem
from observability.timing import PerformanceMonitor, timed_async
from shared.streams import Subscription
from shared.time import Clock, system_clock
from store.base import FamilyProvider, ReminderStore, find_member

logger = logging.getLogger(__name__)

Pair = Tuple[str, Optional[str]]
Key = Tuple[str, Optional[str], int]

DEFAULT_TTL_SECONDS = 300
DEFAULT_PAGE_SIZE = 50


def cache_key(user_id: str, family_id: Optional[str]) -> str:
    return f"{user_id}_{family_id}" if family_id else user_id


class _Feed:
    """Store subscription for one (user, family) pair, fanned out to consumer handles."""

    def __init__(self, pair: Pair):
        self.pair = pair
        self.source: Optional[Subscription[List[ReminderItem]]] = None
        self.task: Optional[asyncio.Task] = None
        self.listeners: List[Subscription[List[ReminderItem]]] = []

    def stop(self) -> None:
        if self.source is not None:
            self.source.cancel()
            self.source = None
        if self.task is not None:
            self.task.cancel()
            self.task = None


class FamilyReminderCache:
    """
    Per-(user, family) cache of paginated reminder lists.

    Entries are immutable and only ever replaced or dropped. Every
    invalidation (explicit, membership change, fresher change-feed snapshot)
    advances an epoch; a store read that started before the latest mark for
    its user, family or pair is returned to its caller but never stored, so
    a get() after invalidate() cannot see older data.

    Construct one per session: init() on sign-in, dispose() on sign-out.
    """

    def __init__(
        self,
        store: ReminderStore,
        family_provider: Optional[FamilyProvider] = None,
        clock: Clock = system_clock,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.store = store
        self.family_provider = family_provider
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self.page_size = page_size
        self.monitor = monitor or PerformanceMonitor()

        self._entries: Dict[Key, CacheEntry] = {}
        self._epoch = 0
        self._user_marks: Dict[str, int] = {}
        self._family_marks: Dict[str, int] = {}
        self._pair_marks: Dict[Pair, int] = {}
        self._feeds: Dict[Pair, _Feed] = {}
        self._active = False

    # --- lifecycle --------------------------------------------------------------

    def init(self) -> "FamilyReminderCache":
        self._active = True
        logger.info("[CACHE] initialized (ttl=%ss, page_size=%s)", int(self.ttl.total_seconds()), self.page_size)
        return self

    def dispose(self) -> None:
        for feed in list(self._feeds.values()):
            for listener in list(feed.listeners):
                listener.cancel()
            feed.stop()
        self._feeds.clear()
        self._entries = {}
        self._active = False
        logger.info("[CACHE] disposed")

    @property
    def active(self) -> bool:
        return self._active

    # --- staleness marks -------------------------------------------------------------

    def _mark(self) -> int:
        self._epoch += 1
        return self._epoch

    def _last_mark(self, pair: Pair) -> int:
        user_id, family_id = pair
        return max(
            self._user_marks.get(user_id, 0),
            self._family_marks.get(family_id, 0) if family_id else 0,
            self._pair_marks.get(pair, 0),
        )

    def _fresh(self, entry: CacheEntry) -> bool:
        return self.clock.now() - entry.inserted_at <= self.ttl

    # --- read path ------------------------------------------------------------------

    async def _members(self, family_id: Optional[str]) -> Optional[List[FamilyMember]]:
        if not family_id or self.family_provider is None:
            return None
        return await self.family_provider.get_members(family_id)

    def _lookup(self, key: Key) -> Optional[CacheEntry]:
        try:
            entry = self._entries.get(key)
            if entry is not None and self._fresh(entry):
                return entry
        except Exception:
            logger.warning("[CACHE] lookup failed for %s, treating as miss", key, exc_info=True)
        return None

    def _store_page(self, pair: Pair, page_index: int, page: ReminderPage, started_at: int) -> None:
        try:
            if self._last_mark(pair) > started_at:
                logger.info("[CACHE] dropping page %s for %s: invalidated during fetch", page_index, cache_key(*pair))
                return
            user_id, family_id = pair
            entries = dict(self._entries)
            if page_index == 0:
                # a new first page starts a new listing; later pages belonged to the old one
                for k in [k for k in entries if k[:2] == pair]:
                    del entries[k]
            entries[(user_id, family_id, page_index)] = CacheEntry(
                user_id=user_id,
                family_id=family_id,
                page_index=page_index,
                page=page,
                inserted_at=self.clock.now(),
                generation=started_at,
            )
            self._entries = entries
        except Exception:
            logger.warning("[CACHE] store failed for %s", cache_key(*pair), exc_info=True)

    async def get(
        self,
        user_id: str,
        family_id: Optional[str] = None,
        page: int = 0,
        use_cache: bool = True,
    ) -> ReminderPage:
        pair: Pair = (user_id, family_id)
        key: Key = (user_id, family_id, page)

        if use_cache and self._active:
            hit = self._lookup(key)
            if hit is not None:
                self.monitor.track_load(0.0, cache_hit=True, query_count=0, family_size=0)
                logger.debug("[CACHE] hit %s page %s", cache_key(user_id, family_id), page)
                return hit.page

        started_at = self._epoch
        members = await self._members(family_id)
        if members is not None and find_member(user_id, members) is None:
            logger.info("[CACHE] user %s is not a member of family %s", user_id, family_id)
            return ReminderPage.empty()

        result, elapsed_ms = await timed_async(
            self.store.query_by_owner(user_id, page, self.page_size, family=members)
        )
        family_size = len(members or ())
        self.monitor.track_load(
            elapsed_ms,
            cache_hit=False,
            query_count=2 + max(family_size - 1, 0),
            family_size=family_size,
        )

        if self._active:
            self._store_page(pair, page, result, started_at)
        return result

    def loaded_items(self, user_id: str, family_id: Optional[str] = None) -> List[ReminderItem]:
        """Items of the contiguous cached pages 0..n, in page order."""
        items: List[ReminderItem] = []
        entries = self._entries
        page = 0
        while (user_id, family_id, page) in entries:
            entry = entries[(user_id, family_id, page)]
            items.extend(entry.items)
            if not entry.has_more:
                break
            page += 1
        return items

    # --- invalidation -----------------------------------------------------------

    def _drop(self, predicate) -> int:
        entries = {k: v for k, v in self._entries.items() if not predicate(k)}
        dropped = len(self._entries) - len(entries)
        self._entries = entries
        return dropped

    def invalidate(self, user_id: str) -> None:
        """Drop every cached page of `user_id`, for every family scope."""
        self._user_marks[user_id] = self._mark()
        dropped = self._drop(lambda k: k[0] == user_id)
        logger.info("[CACHE] invalidated %s (%s entries)", user_id, dropped)

    def invalidate_users(self, user_ids: Sequence[str]) -> None:
        for user_id in dict.fromkeys(user_ids):
            self.invalidate(user_id)

    def invalidate_family(self, family_id: str) -> None:
        self._family_marks[family_id] = self._mark()
        dropped = self._drop(lambda k: k[1] == family_id)
        logger.info("[CACHE] invalidated family %s (%s entries)", family_id, dropped)

    async def on_membership_changed(self, family_id: str) -> None:
        """Membership changes can move items across any page, and change what feeds must watch."""
        self.invalidate_family(family_id)
        for pair, feed in list(self._feeds.items()):
            if pair[1] == family_id:
                await self._start_source(feed)

    # --- change feed -------------------------------------------------------------

    def _replace_from_snapshot(self, pair: Pair, snapshot: List[ReminderItem]) -> None:
        """Last writer wins: rebuild every page of the pair from the snapshot."""
        user_id, family_id = pair
        mark = self._mark()
        self._pair_marks[pair] = mark
        now = self.clock.now()
        ordered = tuple(snapshot)
        entries = {k: v for k, v in self._entries.items() if k[:2] != pair}
        n_pages = max(1, -(-len(ordered) // self.page_size))
        for page_index in range(n_pages):
            entries[(user_id, family_id, page_index)] = CacheEntry(
                user_id=user_id,
                family_id=family_id,
                page_index=page_index,
                page=ReminderPage.slice_of(ordered, page_index, self.page_size),
                inserted_at=now,
                generation=mark,
            )
        self._entries = entries

    async def _pump(self, feed: _Feed, source: Subscription[List[ReminderItem]]) -> None:
        try:
            async for snapshot in source:
                try:
                    self._replace_from_snapshot(feed.pair, snapshot)
                except Exception:
                    logger.warning("[CACHE] snapshot replace failed for %s", cache_key(*feed.pair), exc_info=True)
                for listener in list(feed.listeners):
                    listener.push(list(snapshot))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[CACHE] change feed for %s stopped", cache_key(*feed.pair))

    async def _start_source(self, feed: _Feed) -> None:
        feed.stop()
        user_id, family_id = feed.pair
        members = await self._members(family_id)
        source = self.store.subscribe(user_id, family=members)
        feed.source = source
        feed.task = asyncio.create_task(self._pump(feed, source))

    async def on_change(self, user_id: str, family_id: Optional[str] = None) -> Subscription[List[ReminderItem]]:
        """
        Stream of full visible lists for (user, family). Not restartable:
        after cancel(), call on_change again.
        """
        pair: Pair = (user_id, family_id)
        feed = self._feeds.get(pair)
        if feed is None:
            feed = _Feed(pair)
            self._feeds[pair] = feed
            await self._start_source(feed)

        listener: Subscription[List[ReminderItem]]

        def _unsubscribe() -> None:
            if listener in feed.listeners:
                feed.listeners.remove(listener)
            if not feed.listeners and self._feeds.get(pair) is feed:
                feed.stop()
                del self._feeds[pair]
                logger.info("[CACHE] change feed closed for %s", cache_key(*pair))

        listener = Subscription(on_cancel=_unsubscribe)
        feed.listeners.append(listener)
        # replay the current state so late subscribers don't wait for the next write
        current = self.loaded_items(user_id, family_id)
        if current:
            listener.push(current)
        return listener

    # --- debug ---------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        keys: Set[str] = {cache_key(u, f) for (u, f, _p) in self._entries}
        return {
            "active": self._active,
            "entries": len(self._entries),
            "keys": sorted(keys),
            "feeds": sorted(cache_key(*p) for p in self._feeds),
            "performance": self.monitor.stats(),
        }
