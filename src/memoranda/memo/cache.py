"""Bounded LRU cache of loaded memos, validated against file modification times."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

from memoranda.errors import NotFoundError
from memoranda.memo.base import MemoBackend
from memoranda.memo.models import Memo

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Coalesce concurrent calls for the same key into one underlying call.

    Later callers await the in-flight task. A caller being cancelled does not
    cancel the shared task.
    """

    def __init__(self) -> None:
        self._calls: dict[Hashable, asyncio.Task[T]] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    async def do(self, key: Hashable, func: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._calls[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task[T]) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        if not task.cancelled():
            # Mark the exception as retrieved when every waiter went away
            task.exception()


@dataclass
class CacheEntry:
    memo: Memo
    mtime_ns: int


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    reloads: int = 0
    evictions: int = 0
    size: int = 0
    capacity: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class MemoCache:
    """id → (memo snapshot, observed mtime), reloaded from the backend when stale."""

    def __init__(
        self,
        backend: MemoBackend,
        capacity: int = 1000,
        on_reload: Callable[[Memo], None] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be at least 1")
        self.backend = backend
        self.capacity = capacity
        self._on_reload = on_reload
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._changes: dict[str, int] = {}  # only for ids with a reload in flight
        self._flight: SingleFlight[Memo] = SingleFlight()
        self._stats = CacheStats(capacity=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, memo_id: str) -> bool:
        return memo_id in self._entries

    async def get(self, memo_id: str) -> Memo:
        """Return a snapshot that matches the file currently on disk.

        Raises ``NotFoundError`` (and drops the entry) if the file is gone.
        """
        entry = self._entries.get(memo_id)
        if entry is not None:
            try:
                current = await self.backend.mtime(memo_id)
            except NotFoundError:
                self.invalidate(memo_id)
                raise
            # The entry may have been replaced while we were stat-ing
            entry = self._entries.get(memo_id)
            if entry is not None and entry.mtime_ns == current:
                self._entries.move_to_end(memo_id)
                self._stats.hits += 1
                logger.debug("Cache hit for memo %s", memo_id)
                return entry.memo
            logger.debug("Cache entry for memo %s is stale", memo_id)
        self._stats.misses += 1
        return await self._flight.do(memo_id, lambda: self._reload(memo_id))

    async def _reload(self, memo_id: str) -> Memo:
        self._stats.reloads += 1
        self._changes[memo_id] = 0
        try:
            try:
                memo = await self.backend.read(memo_id)
            except NotFoundError:
                if not self._changes[memo_id]:
                    self.invalidate(memo_id)
                raise
            if self._changes[memo_id]:
                # A put/invalidate landed during the read; never overwrite it with an older snapshot
                entry = self._entries.get(memo_id)
                return entry.memo if entry is not None else memo
            self.put(memo)
        finally:
            self._changes.pop(memo_id, None)
        if self._on_reload is not None:
            self._on_reload(memo)
        return memo

    def _bump(self, memo_id: str) -> None:
        if memo_id in self._changes:
            self._changes[memo_id] += 1

    def put(self, memo: Memo, mtime_ns: int | None = None) -> None:
        """Insert or replace an entry, recording the file's modification time."""
        self._bump(memo.id)
        self._entries[memo.id] = CacheEntry(
            memo=memo, mtime_ns=memo.mtime_ns if mtime_ns is None else mtime_ns
        )
        self._entries.move_to_end(memo.id)
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("Evicted memo %s from cache", evicted)

    def invalidate(self, memo_id: str) -> None:
        self._bump(memo_id)
        self._entries.pop(memo_id, None)

    def clear(self) -> None:
        for memo_id in self._changes:
            self._changes[memo_id] += 1
        self._entries.clear()

    def stats(self) -> CacheStats:
        self._stats.size = len(self._entries)
        return CacheStats(**vars(self._stats))
