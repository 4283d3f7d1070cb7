"""Read-through cache for portal calendar reads."""

import time
from datetime import date
from typing import Callable, Optional

import asyncpg
import structlog

from postflow.database.models import Post
from postflow.database.repository import list_scheduled_posts_for_client

log = structlog.get_logger()

CacheKey = tuple[str, Optional[date], Optional[date]]

DEFAULT_MAX_ENTRIES = 256


class CalendarCache:
    """
    Scheduled posts per (client, date range), served for up to `ttl` seconds.
    Expired entries are evicted on every read and at most `max_entries` are kept
    (oldest dropped first). Writes for a client must call invalidate(client_id).
    """

    def __init__(
        self,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: dict[CacheKey, tuple[float, list[Post]]] = {}

    def _evict(self, now: float) -> None:
        for key in [k for k, (ts, _) in self._entries.items() if now - ts >= self.ttl]:
            del self._entries[key]
        # insertion order: the first key is the oldest
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]

    async def get_posts(
        self,
        pool: asyncpg.Pool,
        client_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        refresh: bool = False,
    ) -> list[Post]:
        key = (client_id, start_date, end_date)
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and not refresh and now - entry[0] < self.ttl:
            log.debug("calendar_cache_hit", client_id=client_id)
            return list(entry[1])
        posts = await list_scheduled_posts_for_client(pool, client_id, start_date, end_date)
        self._entries.pop(key, None)
        self._evict(now)
        self._entries[key] = (now, posts)
        return list(posts)

    def invalidate(self, client_id: Optional[str] = None) -> None:
        """Drop entries of one client, or all entries."""
        if client_id is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k[0] == client_id]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
