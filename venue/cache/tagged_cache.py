"""
In-process TTL cache with tag-based invalidation.

Entries expire after a fixed window and can be purged early by tag:

    value = await cache.get_or_set(key, loader, tags=["dashboard"])
    cache.revalidate_tag("dashboard")

Concurrent misses on the same key share one loader call. A load that is
in flight while one of its tags is purged returns its value to the caller
but does not store it.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from venue.config import settings
from venue.utils import Logger

logger = Logger("venue.cache")

_MISSING = object()


@dataclass
class _Entry:
    expire_at: float
    value: Any
    tags: frozenset[str] = field(default_factory=frozenset)


class TaggedTTLCache:
    def __init__(
        self,
        ttl_seconds: float,
        max_items: int = 2048,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl_seconds = max(ttl_seconds, 0.0)
        self._max_items = max(max_items, 1)
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._tag_index: dict[str, set[str]] = {}
        self._tag_generation: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    # ── internals ────────────────────────────────────────────────

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]

    def _cleanup(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.expire_at <= now]
        for key in expired:
            self._drop(key)
        while len(self._entries) > self._max_items:
            oldest = next(iter(self._entries))
            self._drop(oldest)

    def _generations(self, tags: Iterable[str]) -> dict[str, int]:
        return {tag: self._tag_generation.get(tag, 0) for tag in tags}

    # ── public API ───────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if entry.expire_at <= self._clock():
            self._drop(key)
            return default
        self._entries.move_to_end(key)
        return entry.value

    def set(
        self,
        key: str,
        value: Any,
        tags: Iterable[str] = (),
        ttl: float | None = None,
    ) -> None:
        now = self._clock()
        tag_set = frozenset(tags)
        self._drop(key)
        self._entries[key] = _Entry(
            expire_at=now + (self._ttl_seconds if ttl is None else max(ttl, 0.0)),
            value=value,
            tags=tag_set,
        )
        for tag in tag_set:
            self._tag_index.setdefault(tag, set()).add(key)
        self._cleanup(now)

    async def get_or_set(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        tags: Iterable[str] = (),
        ttl: float | None = None,
    ) -> Any:
        """Return the cached value for `key`, computing it with `loader` on a miss."""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value

        tag_list = list(tags)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                value = self.get(key, _MISSING)
                if value is not _MISSING:
                    return value

                before = self._generations(tag_list)
                value = await loader()
                if self._generations(tag_list) == before:
                    self.set(key, value, tags=tag_list, ttl=ttl)
                else:
                    logger.debug(f"Skipped caching '{key}': tag purged during load")
                return value
        finally:
            # last caller out drops the lock
            remaining = self._lock_users.get(key, 1) - 1
            if remaining > 0:
                self._lock_users[key] = remaining
            else:
                self._lock_users.pop(key, None)
                if self._locks.get(key) is lock:
                    del self._locks[key]

    def revalidate_tag(self, tag: str) -> int:
        """Purge every entry carrying `tag`. Returns the number purged."""
        self._tag_generation[tag] = self._tag_generation.get(tag, 0) + 1
        keys = list(self._tag_index.get(tag, ()))
        for key in keys:
            self._drop(key)
        if keys:
            logger.info(f"Revalidated tag '{tag}': {len(keys)} entries purged")
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self._tag_index.clear()
        self._locks.clear()
        self._lock_users.clear()


# ── Module-level singleton ──────────────────────────────────────
snapshot_cache = TaggedTTLCache(ttl_seconds=settings.dashboard_cache_ttl_seconds)


def revalidate_tag(tag: str) -> int:
    return snapshot_cache.revalidate_tag(tag)
