"""
Unit tests for the in-memory document repository.

Tests cover:
- Create/find/delete lifecycle
- Atomic changes and patch derivation
- Change listeners
- Flush bookkeeping and storage persistence
- Testing helpers
"""

import tempfile
from pathlib import Path

import pytest

from mergedb.repo import (
    DocumentDeletedError,
    DocumentNotFoundError,
    InMemoryKeyValueStore,
    InMemoryRepo,
    Patch,
    RepoClosedError,
    SqliteStorage,
    diff_documents,
)


class TestDiffDocuments:
    """Tests for structural patch derivation."""

    def test_put_new_key(self):
        """New keys produce put patches with the value."""
        patches = diff_documents({}, {"title": "hello"})
        assert patches == [Patch("put", ("title",), "hello")]

    def test_delete_key(self):
        """Removed keys produce del patches."""
        patches = diff_documents({"title": "hello"}, {})
        assert patches == [Patch("del", ("title",))]

    def test_nested_maps_recurse(self):
        """Changes inside nested maps carry the full path."""
        before = {"byId": {"a": 0}}
        after = {"byId": {"a": 0, "b": 0}}

        assert diff_documents(before, after) == [Patch("put", ("byId", "b"), 0)]

    def test_unchanged_value_no_patch(self):
        """Identical documents produce no patches."""
        assert diff_documents({"a": [1, 2], "b": {"c": 1}}, {"a": [1, 2], "b": {"c": 1}}) == []

    def test_bool_and_int_are_distinct(self):
        """Replacing 1 with True is a change."""
        patches = diff_documents({"flag": 1}, {"flag": True})
        assert patches == [Patch("put", ("flag",), True)]

    def test_lists_replaced_whole(self):
        """Lists are atomic values."""
        patches = diff_documents({"tags": ["a"]}, {"tags": ["a", "b"]})
        assert patches == [Patch("put", ("tags",), ["a", "b"])]


class TestInMemoryRepo:
    """Tests for InMemoryRepo."""

    @pytest.fixture
    def repo(self):
        """Create a fresh repository."""
        return InMemoryRepo()

    @pytest.mark.asyncio
    async def test_create_and_find(self, repo):
        """Created documents can be found by id."""
        handle = repo.create({"title": "hello"})

        found = await repo.find(handle.document_id)

        assert found is handle
        assert found.doc() == {"title": "hello"}

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, repo):
        """Every created document gets a new id."""
        ids = {repo.create().document_id for _ in range(50)}
        assert len(ids) == 50

    @pytest.mark.asyncio
    async def test_find_unknown_raises(self, repo):
        """Unknown ids cannot be resolved."""
        with pytest.raises(DocumentNotFoundError):
            await repo.find("missing")

    def test_doc_is_detached_snapshot(self, repo):
        """Mutating a snapshot does not change the document."""
        handle = repo.create({"items": {"a": 1}})

        snapshot = handle.doc()
        snapshot["items"]["b"] = 2

        assert handle.doc() == {"items": {"a": 1}}

    def test_change_visible_immediately(self, repo):
        """Changes are applied synchronously."""
        handle = repo.create({"count": 0})

        handle.change(lambda doc: doc.__setitem__("count", 1))

        assert handle.doc()["count"] == 1

    def test_failed_change_is_discarded(self, repo):
        """A raising change function leaves the document untouched."""
        handle = repo.create({"count": 0})

        def broken(doc):
            doc["count"] = 5
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            handle.change(broken)

        assert handle.doc() == {"count": 0}

    def test_listeners_receive_patches(self, repo):
        """Listeners get patches and the resulting snapshot."""
        handle = repo.create({"byId": {}})
        payloads = []
        handle.on_change(payloads.append)

        handle.change(lambda doc: doc["byId"].__setitem__("row1", 0))

        assert len(payloads) == 1
        assert payloads[0].patches == [Patch("put", ("byId", "row1"), 0)]
        assert payloads[0].doc == {"byId": {"row1": 0}}

    def test_unsubscribe_stops_notifications(self, repo):
        """Unsubscribed listeners are not called."""
        handle = repo.create({})
        payloads = []
        unsubscribe = handle.on_change(payloads.append)

        unsubscribe()
        handle.change(lambda doc: doc.__setitem__("a", 1))

        assert payloads == []

    def test_noop_change_emits_nothing(self, repo):
        """A change that alters nothing does not notify."""
        handle = repo.create({"a": 1})
        payloads = []
        handle.on_change(payloads.append)

        handle.change(lambda doc: doc.__setitem__("a", 1))

        assert payloads == []

    @pytest.mark.asyncio
    async def test_delete(self, repo):
        """Deleted documents can no longer be found or changed."""
        handle = repo.create({"a": 1})
        document_id = handle.document_id

        await repo.delete(document_id)

        assert handle.is_deleted
        with pytest.raises(DocumentDeletedError):
            await repo.find(document_id)
        with pytest.raises(DocumentDeletedError):
            handle.change(lambda doc: None)

    @pytest.mark.asyncio
    async def test_flush_records_calls(self, repo):
        """Flush requests are recorded in order."""
        a = repo.create()
        b = repo.create()

        await repo.flush([a.document_id, b.document_id, a.document_id])

        assert repo.flush_calls == [[a.document_id, b.document_id]]

    @pytest.mark.asyncio
    async def test_close_refuses_further_use(self, repo):
        """Closed repositories reject operations."""
        await repo.close()

        with pytest.raises(RepoClosedError):
            repo.create()

    @pytest.mark.asyncio
    async def test_fail_next_find_helper(self, repo):
        """Testing helper fails exactly one lookup."""
        handle = repo.create()
        repo.fail_next_find(handle.document_id)

        with pytest.raises(DocumentNotFoundError):
            await repo.find(handle.document_id)
        assert await repo.find(handle.document_id) is handle

    @pytest.mark.asyncio
    async def test_drop_helper(self, repo):
        """Dropped documents are unreachable."""
        handle = repo.create()
        repo.drop(handle.document_id)

        assert repo.document_count() == 0
        with pytest.raises(DocumentNotFoundError):
            await repo.find(handle.document_id)


class TestInMemoryRepoWithStorage:
    """Tests for InMemoryRepo backed by SqliteStorage."""

    @pytest.fixture
    def db_path(self):
        """Create temporary database path."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield str(Path(tmpdir) / "repo.sqlite3")

    @pytest.mark.asyncio
    async def test_flushed_documents_survive_restart(self, db_path):
        """A new repository over the same file finds flushed documents."""
        repo = InMemoryRepo(storage=SqliteStorage(db_path, wal_mode=False))
        handle = repo.create({"title": "persisted"})
        await repo.flush([handle.document_id])

        reopened = InMemoryRepo(storage=SqliteStorage(db_path, wal_mode=False))
        found = await reopened.find(handle.document_id)

        assert found.doc() == {"title": "persisted"}

    @pytest.mark.asyncio
    async def test_unflushed_documents_are_lost(self, db_path):
        """Without a flush nothing reaches storage."""
        repo = InMemoryRepo(storage=SqliteStorage(db_path, wal_mode=False))
        handle = repo.create({"title": "volatile"})

        reopened = InMemoryRepo(storage=SqliteStorage(db_path, wal_mode=False))
        with pytest.raises(DocumentNotFoundError):
            await reopened.find(handle.document_id)

    @pytest.mark.asyncio
    async def test_flushed_deletion_removes_document(self, db_path):
        """Flushing a deleted id removes it from storage."""
        storage = SqliteStorage(db_path, wal_mode=False)
        repo = InMemoryRepo(storage=storage)
        handle = repo.create({"title": "gone"})
        await repo.flush([handle.document_id])

        handle.delete()
        await repo.flush([handle.document_id])

        assert await storage.load(handle.document_id) is None

    @pytest.mark.asyncio
    async def test_close_flushes_everything(self, db_path):
        """close() persists every dirty document."""
        storage = SqliteStorage(db_path, wal_mode=False)
        repo = InMemoryRepo(storage=storage)
        handle = repo.create({"a": 1})
        handle.change(lambda doc: doc.__setitem__("a", 2))

        await repo.close()

        assert await storage.load(handle.document_id) == {"a": 2}


class TestKeyValueStores:
    """Tests for the key-value stores anchoring root ids."""

    @pytest.mark.asyncio
    async def test_in_memory_store(self):
        """In-memory store round-trips values."""
        store = InMemoryKeyValueStore()
        assert await store.get("root") is None

        await store.set("root", "abc")

        assert await store.get("root") == "abc"

    @pytest.mark.asyncio
    async def test_sqlite_store_overwrites(self):
        """SQLite store keeps the latest value per key."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteStorage(str(Path(tmpdir) / "kv.sqlite3"), wal_mode=False)

            await store.set("root", "first")
            await store.set("root", "second")

            assert await store.get("root") == "second"
            assert await store.get("other") is None
