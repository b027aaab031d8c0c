"""Tests for the memo store: the seven operations end to end over real files."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import pytest

from memoranda.config import MemorandaConfig
from memoranda.errors import NotFoundError, ScopeNotFound, ValidationError
from memoranda.ids import new_id
from memoranda.memo.models import Memo
from memoranda.memo.storage import FileStorage, render_memo
from memoranda.memo.store import MemoStore

MISSING_ID = "01ARZ3NDEKTSV4RRFFQ69G5FAV"


def _touch_later(path: Path) -> None:
    """Move mtime forward so the change is visible despite coarse timestamps."""
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))


class RecordingStorage(FileStorage):
    """FileStorage that tracks how many updates run at once, per id and overall."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.active: dict[str, int] = {}
        self.peak: dict[str, int] = {}
        self.peak_total = 0

    async def update(self, memo_id: str, content: str) -> Memo:
        self.active[memo_id] = self.active.get(memo_id, 0) + 1
        self.peak[memo_id] = max(self.peak.get(memo_id, 0), self.active[memo_id])
        self.peak_total = max(self.peak_total, sum(self.active.values()))
        try:
            await asyncio.sleep(0.01)
            return await super().update(memo_id, content)
        finally:
            self.active[memo_id] -= 1


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_create_then_get(self, store: MemoStore):
        memo = await store.create_memo("API Notes", "Use bearer tokens")
        fetched = await store.get_memo(memo.id)
        assert fetched == memo
        assert fetched.content == "Use bearer tokens"
        assert fetched.created_at == fetched.updated_at

    @pytest.mark.asyncio
    async def test_get_accepts_lowercase_id(self, store: MemoStore):
        memo = await store.create_memo("t", "c")
        assert (await store.get_memo(memo.id.lower())).id == memo.id

    @pytest.mark.asyncio
    async def test_create_validates(self, store: MemoStore):
        with pytest.raises(ValidationError):
            await store.create_memo("", "content")
        with pytest.raises(ValidationError):
            await store.create_memo("x" * 256, "content")
        assert await store.list_memos() == []

    @pytest.mark.asyncio
    async def test_get_invalid_id(self, store: MemoStore):
        with pytest.raises(ValidationError):
            await store.get_memo("nope")

    @pytest.mark.asyncio
    async def test_concurrent_creates_get_distinct_ids(self, store: MemoStore):
        memos = await asyncio.gather(*(store.create_memo("Same", str(i)) for i in range(20)))
        ids = [m.id for m in memos]
        assert len(set(ids)) == 20
        assert len(await store.list_memos()) == 20

    @pytest.mark.asyncio
    async def test_empty_content_allowed(self, store: MemoStore):
        memo = await store.create_memo("Empty", "")
        assert (await store.get_memo(memo.id)).content == ""


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_keeps_identity(self, store: MemoStore):
        memo = await store.create_memo("API Notes", "v1")
        updated = await store.update_memo(memo.id, "v2")
        assert updated.id == memo.id
        assert updated.title == "API Notes"
        assert updated.created_at == memo.created_at
        assert updated.updated_at > memo.updated_at
        assert (await store.get_memo(memo.id)).content == "v2"

    @pytest.mark.asyncio
    async def test_update_missing(self, store: MemoStore):
        with pytest.raises(NotFoundError):
            await store.update_memo(MISSING_ID, "x")

    @pytest.mark.asyncio
    async def test_concurrent_updates_serialize(self, repo: Path, config: MemorandaConfig):
        storage = RecordingStorage.discover(repo, config)
        store = MemoStore(storage, config)
        first = await store.create_memo("First", "0")
        second = await store.create_memo("Second", "0")

        await asyncio.gather(*(
            store.update_memo(memo.id, str(i))
            for i in range(1, 6)
            for memo in (first, second)
        ))

        # Same id never overlaps, different ids do
        assert storage.peak == {first.id: 1, second.id: 1}
        assert storage.peak_total == 2
        final = await store.get_memo(first.id)
        assert final.content in {str(i) for i in range(1, 6)}
        assert final.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_write_locks_released(self, store: MemoStore):
        memo = await store.create_memo("Counter", "0")
        await asyncio.gather(*(store.update_memo(memo.id, str(i)) for i in range(5)))
        assert store._write_locks == {}
        assert store._lock_users == {}


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_everywhere(self, store: MemoStore):
        memo = await store.create_memo("API Notes", "Use bearer tokens")
        assert [h.id for h in await store.search_memos("bearer")] == [memo.id]

        await store.delete_memo(memo.id)
        with pytest.raises(NotFoundError):
            await store.get_memo(memo.id)
        assert await store.list_memos() == []
        assert await store.search_memos("bearer") == []
        assert memo.id not in store.cache

    @pytest.mark.asyncio
    async def test_delete_nonexistent_has_no_side_effects(self, store: MemoStore):
        memo = await store.create_memo("Keep", "kept content")
        await store.search_memos("kept")
        with pytest.raises(NotFoundError):
            await store.delete_memo(MISSING_ID)
        assert memo.id in store.cache
        assert [h.id for h in await store.search_memos("kept")] == [memo.id]

    @pytest.mark.asyncio
    async def test_delete_twice(self, store: MemoStore):
        memo = await store.create_memo("Temp", "x")
        await store.delete_memo(memo.id)
        with pytest.raises(NotFoundError):
            await store.delete_memo(memo.id)


class TestList:
    @pytest.mark.asyncio
    async def test_creation_order(self, store: MemoStore):
        created = [await store.create_memo(f"Memo {i}", "x") for i in range(3)]
        listed = await store.list_memos()
        assert [m.id for m in listed] == [m.id for m in created]
        assert not hasattr(listed[0], "content")

    @pytest.mark.asyncio
    async def test_order_is_stable(self, store: MemoStore):
        for i in range(5):
            await store.create_memo(f"Memo {i}", "x")
        first = [m.id for m in await store.list_memos()]
        await store.get_memo(first[-1])
        second = [m.id for m in await store.list_memos()]
        assert first == second
        assert first == sorted(first)


class TestSearch:
    @pytest.mark.asyncio
    async def test_read_your_writes(self, store: MemoStore):
        memo = await store.create_memo("API Notes", "Use bearer tokens")
        assert [h.id for h in await store.search_memos("bearer")] == [memo.id]

        await store.update_memo(memo.id, "Use OAuth2")
        assert await store.search_memos("bearer") == []
        assert [h.id for h in await store.search_memos("oauth2")] == [memo.id]

    @pytest.mark.asyncio
    async def test_title_ranks_above_content(self, store: MemoStore):
        in_content = await store.create_memo("Notes", "we deploy with kubernetes")
        in_title = await store.create_memo("Kubernetes", "cluster setup")
        hits = await store.search_memos("kubernetes")
        assert [h.id for h in hits] == [in_title.id, in_content.id]

    @pytest.mark.asyncio
    async def test_index_built_from_existing_files(self, storage, config):
        first = MemoStore(storage, config)
        memo = await first.create_memo("Existing", "persisted across stores")

        second = MemoStore(storage, config)
        hits = await second.search_memos("persisted")
        assert [h.id for h in hits] == [memo.id]

    @pytest.mark.asyncio
    async def test_external_edit_is_picked_up_by_get(self, store: MemoStore):
        memo = await store.create_memo("API Notes", "Use bearer tokens")
        await store.search_memos("bearer")

        edited = memo.with_content("Rotated to mutual TLS")
        memo.location.write_text(render_memo(edited), encoding="utf-8")
        _touch_later(memo.location)

        assert (await store.get_memo(memo.id)).content == "Rotated to mutual TLS"
        # The reload also refreshed the index
        assert [h.id for h in await store.search_memos("mutual")] == [memo.id]

    @pytest.mark.asyncio
    async def test_rejects_bad_queries(self, store: MemoStore):
        with pytest.raises(ValidationError):
            await store.search_memos("")
        with pytest.raises(ValidationError):
            await store.search_memos("q" * 1001)
        with pytest.raises(ValidationError):
            await store.search_memos("(" * 999 + "a")

    @pytest.mark.asyncio
    async def test_tag_filter(self, store: MemoStore, storage: FileStorage):
        tagged = storage.primary / "tagged.md"
        tagged.write_text("---\ntitle: Tagged\ntags: [security]\n---\nshared words")
        await store.create_memo("Untagged", "shared words")
        hits = await store.search_memos("shared tag:security")
        assert [h.title for h in hits] == ["Tagged"]

    @pytest.mark.asyncio
    async def test_recovers_from_index_corruption(self, store: MemoStore):
        memo = await store.create_memo("API Notes", "Use bearer tokens")
        await store.search_memos("bearer")
        del store.index._docs[memo.id]

        hits = await store.search_memos("bearer")
        assert [h.id for h in hits] == [memo.id]

    @pytest.mark.asyncio
    async def test_rebuild_index(self, store: MemoStore):
        await store.create_memo("A", "alpha")
        await store.create_memo("B", "beta")
        assert await store.rebuild_index() == 2


class TestContext:
    @pytest.mark.asyncio
    async def test_empty(self, store: MemoStore):
        assert await store.get_all_context() == ""

    @pytest.mark.asyncio
    async def test_includes_every_memo_in_order(self, store: MemoStore):
        first = await store.create_memo("First", "one")
        second = await store.create_memo("Second", "two")
        context = await store.get_all_context()
        assert context.index("# First") < context.index("# Second")
        assert f"**ID:** {first.id}" in context
        assert f"**ID:** {second.id}" in context
        assert "one\n\n---\n\n" in context
        assert " UTC\n" in context

    @pytest.mark.asyncio
    async def test_never_truncated(self, store: MemoStore, caplog):
        big = "word " * 20_000
        await store.create_memo("Big", big)
        with caplog.at_level(logging.WARNING, logger="memoranda.memo.store"):
            context = await store.get_all_context()
        assert big in context
        assert "threshold" in caplog.text


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_warm_cache_and_stats(self, storage, config):
        writer = MemoStore(storage, config)
        for i in range(3):
            await writer.create_memo(f"M{i}", "x")

        store = MemoStore(storage, config)
        assert await store.warm_cache() == 3
        memos = await store.list_memos()
        for meta in memos:
            await store.get_memo(meta.id)
        stats = store.cache_stats()
        assert stats.size == 3
        assert stats.hits == 3
        assert stats.misses == 3

    @pytest.mark.asyncio
    async def test_open_discovers_scope(self, repo: Path):
        sub = repo / "sub"
        sub.mkdir()
        store = await MemoStore.open(sub)
        assert store.backend.primary == repo.resolve() / ".memoranda"

    @pytest.mark.asyncio
    async def test_open_outside_repository(self, tmp_path: Path):
        with pytest.raises(ScopeNotFound):
            await MemoStore.open(tmp_path, MemorandaConfig())

    @pytest.mark.asyncio
    async def test_stores_are_independent(self, repo: Path, tmp_path_factory, config):
        other = tmp_path_factory.mktemp("other")
        (other / ".git").mkdir()
        a = await MemoStore.open(repo, config)
        b = await MemoStore.open(other, config)
        await a.create_memo("Only in A", "alpha")
        assert await b.list_memos() == []
        assert await b.search_memos("alpha") == []


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_missing_ids_leave_no_state(self, store: MemoStore):
        for _ in range(250):
            missing = new_id()
            with pytest.raises(NotFoundError):
                await store.get_memo(missing)
            with pytest.raises(NotFoundError):
                await store.delete_memo(missing)
        assert store._write_locks == {}
        assert store._lock_users == {}
        assert store.cache._changes == {}
        assert len(store.cache) == 0
