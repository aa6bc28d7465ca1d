"""
Listing cache for the tubepool service.

Keeps the most recent listing per (tab, page) so repeated reads do not cost a
browser round-trip. Concurrent misses for the same key share one refresh.
When a refresh fails and an expired entry exists, the expired entry is served
marked as stale if the stale-fallback policy is enabled.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from shared.logging import get_logger

from .errors import FetchFailed, InvalidRequest, OperationTimeout, TubePoolError
from .models import VideoInfo
from .scraper import Scraper

log = get_logger("tubepool", "cache")

CacheKey = tuple[str, int]


@dataclass(frozen=True)
class CacheEntry:
    """One cached listing. Replaced wholesale, never mutated."""

    tab: str
    page: int
    videos: tuple[VideoInfo, ...]
    fetched_at: float
    freshness_seconds: float

    @property
    def key(self) -> CacheKey:
        return (self.tab, self.page)

    def is_expired(self, now: float) -> bool:
        return now - self.fetched_at >= self.freshness_seconds


@dataclass
class ListingResult:
    """What a caller of ListingCache.get receives."""

    tab: str
    page: int
    videos: list[VideoInfo]
    fetched_at: float
    from_cache: bool = False
    stale: bool = False
    error: Optional[TubePoolError] = None

    @classmethod
    def from_entry(cls, entry: CacheEntry, from_cache: bool, stale: bool = False,
                   error: Optional[TubePoolError] = None) -> "ListingResult":
        return cls(
            tab=entry.tab,
            page=entry.page,
            videos=list(entry.videos),
            fetched_at=entry.fetched_at,
            from_cache=from_cache,
            stale=stale,
            error=error,
        )


@dataclass
class _Counters:
    hits: int = 0
    misses: int = 0
    fetches: int = 0
    coalesced: int = 0
    stale_served: int = 0
    since: float = field(default_factory=time.time)


class ListingCache:
    """
    Per-(tab, page) listing cache in front of a Scraper.

    Features:
    - Freshness window and stale fallback are configuration
    - Request coalescing: one in-flight refresh per key
    - Refreshes run under a timeout
    - Invalidation during an in-flight refresh prevents its write-back
    """

    def __init__(
        self,
        scraper: Scraper,
        freshness_seconds: float = 300.0,
        stale_fallback: bool = True,
        fetch_timeout: float = 90.0,
        clock: Callable[[], float] = time.time,
    ):
        self._scraper = scraper
        self.freshness_seconds = freshness_seconds
        self.stale_fallback = stale_fallback
        self.fetch_timeout = fetch_timeout
        self._clock = clock

        self._entries: dict[CacheKey, CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}
        self._tab_generations: dict[str, int] = {}
        self._generation = 0
        self._counters = _Counters(since=clock())

    @classmethod
    def from_config(cls, scraper: Scraper, config: dict) -> "ListingCache":
        cache_config = config.get("cache", {})
        return cls(
            scraper,
            freshness_seconds=cache_config.get("freshness_seconds", 300.0),
            stale_fallback=cache_config.get("stale_fallback", True),
            fetch_timeout=cache_config.get("fetch_timeout_seconds", 90.0),
        )

    async def get(self, tab: str, page: int = 0, force_refresh: bool = False) -> ListingResult:
        """
        Get a listing, fetching it if missing, expired or force_refresh is set.

        Raises the fetch error when the refresh fails and no stale entry can be
        served under the fallback policy.
        """
        if page < 0:
            raise InvalidRequest(f"page must be >= 0, got {page}")
        key = (tab.lower(), page)

        entry = self._entries.get(key)
        if not force_refresh and entry is not None and not entry.is_expired(self._clock()):
            self._counters.hits += 1
            log.debug("tubepool.cache.hit", tab=key[0], page=page)
            return ListingResult.from_entry(entry, from_cache=True)

        self._counters.misses += 1
        log.debug("tubepool.cache.miss", tab=key[0], page=page,
                  reason="forced" if force_refresh else ("expired" if entry else "absent"))

        try:
            fresh = await self._refresh(key)
        except TubePoolError as e:
            previous = self._entries.get(key)
            if self.stale_fallback and previous is not None:
                now = self._clock()
                # A forced refresh can fail while the old entry is still fresh
                stale = previous.is_expired(now)
                if stale:
                    self._counters.stale_served += 1
                log.warning("tubepool.cache.fallback_served",
                            tab=key[0], page=page, error=e.code, stale=stale,
                            age_seconds=round(now - previous.fetched_at, 1))
                return ListingResult.from_entry(previous, from_cache=True, stale=stale, error=e)
            raise

        return ListingResult.from_entry(fresh, from_cache=False)

    def invalidate_tab(self, tab: str) -> int:
        """Remove every entry of a tab. Returns the number removed."""
        tab_key = tab.lower()
        self._tab_generations[tab_key] = self._tab_generations.get(tab_key, 0) + 1
        keys = [k for k in self._entries if k[0] == tab_key]
        for k in keys:
            del self._entries[k]
        if keys:
            log.info("tubepool.cache.invalidated", tab=tab_key, removed=len(keys))
        return len(keys)

    def invalidate_all(self) -> int:
        """Clear the cache. Returns the number of entries removed."""
        self._generation += 1
        removed = len(self._entries)
        self._entries.clear()
        log.info("tubepool.cache.invalidated_all", removed=removed)
        return removed

    def stats(self) -> dict:
        """Entry counts, per-tab presence and counters since the last reset."""
        now = self._clock()
        tabs: dict[str, dict] = {}
        for (tab, page), entry in sorted(self._entries.items()):
            info = tabs.setdefault(tab, {"pages": [], "fresh": 0, "stale": 0, "last_updated": None})
            info["pages"].append(page)
            if entry.is_expired(now):
                info["stale"] += 1
            else:
                info["fresh"] += 1
            updated = datetime.fromtimestamp(entry.fetched_at).isoformat()
            if info["last_updated"] is None or updated > info["last_updated"]:
                info["last_updated"] = updated

        c = self._counters
        lookups = c.hits + c.misses
        return {
            "total_entries": len(self._entries),
            "tabs": tabs,
            "hits": c.hits,
            "misses": c.misses,
            "hit_rate": round(c.hits / lookups, 3) if lookups else None,
            "fetches": c.fetches,
            "coalesced": c.coalesced,
            "stale_served": c.stale_served,
            "in_flight": len(self._inflight),
            "freshness_seconds": self.freshness_seconds,
            "stale_fallback": self.stale_fallback,
            "counters_since": datetime.fromtimestamp(c.since).isoformat(),
        }

    def reset_stats(self):
        self._counters = _Counters(since=self._clock())

    # --- internals ---

    async def _refresh(self, key: CacheKey) -> CacheEntry:
        """Join the in-flight refresh for key, or start one."""
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._refresh_done(key, t))
        else:
            self._counters.coalesced += 1
            log.debug("tubepool.cache.coalesced", tab=key[0], page=key[1])
        # One waiter giving up must not cancel the refresh for the others
        return await asyncio.shield(task)

    def _refresh_done(self, key: CacheKey, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters re-raise it themselves
            task.exception()

    async def _fetch(self, key: CacheKey) -> CacheEntry:
        tab, page = key
        generation = (self._generation, self._tab_generations.get(tab, 0))
        self._counters.fetches += 1

        try:
            videos = await asyncio.wait_for(
                self._scraper.fetch_listing(tab, page), timeout=self.fetch_timeout
            )
        except asyncio.TimeoutError as e:
            log.warning("tubepool.cache.fetch_timeout", tab=tab, page=page, timeout=self.fetch_timeout)
            raise OperationTimeout(f"listing fetch for '{tab}' page {page}", self.fetch_timeout) from e
        except TubePoolError as e:
            log.warning("tubepool.cache.fetch_failed", tab=tab, page=page, error=e.code, message=e.message)
            raise
        except Exception as e:
            log.exception(e, "tubepool.cache.fetch_error", {"tab": tab, "page": page})
            raise FetchFailed(tab, page, str(e) or type(e).__name__) from e

        entry = CacheEntry(
            tab=tab,
            page=page,
            videos=tuple(videos),
            fetched_at=self._clock(),
            freshness_seconds=self.freshness_seconds,
        )

        if generation == (self._generation, self._tab_generations.get(tab, 0)):
            self._entries[key] = entry
            log.info("tubepool.cache.stored", tab=tab, page=page, videos=len(entry.videos))
        else:
            log.info("tubepool.cache.store_skipped", tab=tab, page=page, reason="invalidated_during_fetch")
        return entry
