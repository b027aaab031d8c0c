"""Memo store: composes file storage, cache and search index.

Mutations go to disk first, then the cache, then the index, so that a crash
part-way leaves the files as the recoverable truth. Writes to one memo id
are serialized through a per-id lock; different ids proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from memoranda.config import MemorandaConfig
from memoranda.errors import IndexCorruption, NotFoundError
from memoranda.memo.base import MemoBackend
from memoranda.memo.cache import CacheStats, MemoCache
from memoranda.memo.models import (
    Memo,
    MemoMeta,
    validate_content,
    validate_id,
    validate_query,
    validate_title,
)
from memoranda.memo.search import SearchHit, SearchIndex
from memoranda.memo.storage import FileStorage

logger = logging.getLogger(__name__)


class MemoStore:
    """The operation set served to the tool layer. One instance per scope."""

    def __init__(self, backend: MemoBackend, config: MemorandaConfig | None = None) -> None:
        self.config = config or MemorandaConfig()
        self.backend = backend
        self.cache = MemoCache(backend, self.config.cache.capacity, on_reload=self._reindex)
        self.index = SearchIndex(self.config.search)
        self._index_ready = False
        self._index_lock = asyncio.Lock()
        self._rebuild_log: dict[str, Memo | None] | None = None
        self._write_locks: dict[str, asyncio.Lock] = {}  # per-id serialization
        self._lock_users: dict[str, int] = {}

    @classmethod
    async def open(
        cls, start_dir: Path | str | None = None, config: MemorandaConfig | None = None
    ) -> MemoStore:
        """Discover the storage scope around start_dir (default: cwd) and build a store."""
        config = config or MemorandaConfig()
        storage = await asyncio.to_thread(FileStorage.discover, start_dir or Path.cwd(), config)
        logger.info(
            "Memo store opened with %d storage dir(s): %s",
            len(storage.directories),
            ", ".join(str(d) for d in storage.directories),
        )
        return cls(storage, config)

    @asynccontextmanager
    async def _locked(self, memo_id: str):
        """Hold the write lock for one memo id; the lock is dropped with its last user."""
        lock = self._write_locks.get(memo_id)
        if lock is None:
            lock = self._write_locks[memo_id] = asyncio.Lock()
        self._lock_users[memo_id] = self._lock_users.get(memo_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[memo_id] -= 1
            if not self._lock_users[memo_id]:
                del self._lock_users[memo_id]
                del self._write_locks[memo_id]

    # ── Index bookkeeping ─────────────────────────────────────

    def _reindex(self, memo: Memo) -> None:
        self.index.index(memo)
        if self._rebuild_log is not None:
            self._rebuild_log[memo.id] = memo

    def _unindex(self, memo_id: str) -> None:
        self.index.remove(memo_id)
        if self._rebuild_log is not None:
            self._rebuild_log[memo_id] = None

    async def _ensure_index(self) -> None:
        if not self._index_ready:
            await self.rebuild_index()

    async def rebuild_index(self) -> int:
        """Rebuild the search index from the storage listing.

        Changes made through this store while the rebuild runs are replayed
        onto the new index before it replaces the old one.
        """
        async with self._index_lock:
            self._rebuild_log = {}
            try:
                fresh = SearchIndex(self.config.search)
                async for meta in self.backend.list():
                    try:
                        memo = await self.cache.get(meta.id)
                    except NotFoundError:
                        continue
                    fresh.index(memo)
                for memo_id, memo in self._rebuild_log.items():
                    if memo is None:
                        fresh.remove(memo_id)
                    else:
                        fresh.index(memo)
                self.index = fresh
                self._index_ready = True
            finally:
                self._rebuild_log = None
        logger.info("Search index rebuilt: %d memos", len(self.index))
        return len(self.index)

    # ── Operations ────────────────────────────────────────────

    async def create_memo(self, title: str, content: str) -> Memo:
        validate_title(title)
        validate_content(content)
        memo = await self.backend.write(title, content)
        self.cache.put(memo)
        self._reindex(memo)
        logger.info("Created memo %s (%s)", memo.id, memo.title)
        return memo

    async def update_memo(self, memo_id: str, content: str) -> Memo:
        memo_id = validate_id(memo_id)
        validate_content(content)
        async with self._locked(memo_id):
            memo = await self.backend.update(memo_id, content)
            self.cache.put(memo)
            self._reindex(memo)
        logger.info("Updated memo %s", memo_id)
        return memo

    async def delete_memo(self, memo_id: str) -> None:
        memo_id = validate_id(memo_id)
        async with self._locked(memo_id):
            await self.backend.delete(memo_id)
            self.cache.invalidate(memo_id)
            self._unindex(memo_id)
        logger.info("Deleted memo %s", memo_id)

    async def get_memo(self, memo_id: str) -> Memo:
        memo_id = validate_id(memo_id)
        try:
            return await self.cache.get(memo_id)
        except NotFoundError:
            self._unindex(memo_id)
            raise

    async def list_memos(self) -> list[MemoMeta]:
        """All memos in scope: directory order, then creation (id) order."""
        return [meta async for meta in self.backend.list()]

    async def search_memos(self, query: str) -> list[SearchHit]:
        validate_query(query)
        await self._ensure_index()
        try:
            return self.index.query(query)
        except IndexCorruption as e:
            logger.warning("Search index corrupted (%s); rebuilding", e)
            await self.rebuild_index()
            return self.index.query(query)

    async def get_all_context(self) -> str:
        """Every memo as one markdown block, in listing order. Never truncated."""
        parts = []
        for meta in await self.list_memos():
            try:
                memo = await self.cache.get(meta.id)
            except NotFoundError:
                continue
            parts.append(_format_context_entry(memo))
        context = "".join(parts)
        if len(context) > self.config.context_warn_threshold:
            logger.warning(
                "Memo context is %d chars (threshold: %d)",
                len(context),
                self.config.context_warn_threshold,
            )
        return context

    # ── Maintenance ───────────────────────────────────────────

    async def warm_cache(self) -> int:
        """Load every listed memo into the cache; returns how many were loaded."""
        count = 0
        async for meta in self.backend.list():
            try:
                await self.cache.get(meta.id)
            except NotFoundError:
                continue
            count += 1
        logger.info("Warmed cache with %d memos", count)
        return count

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()


def _format_context_entry(memo: Memo) -> str:
    tags = ", ".join(memo.tags) if memo.tags else "-"
    return (
        f"# {memo.title}\n\n"
        f"**ID:** {memo.id}\n"
        f"**Created:** {memo.created_at.strftime('%Y-%m-%d %H:%M:%S')} UTC\n"
        f"**Updated:** {memo.updated_at.strftime('%Y-%m-%d %H:%M:%S')} UTC\n"
        f"**Tags:** {tags}\n\n"
        f"{memo.content}\n\n"
        f"---\n\n"
    )
