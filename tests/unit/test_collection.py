"""
Unit tests for the collection engine.

Tests cover:
- Create/update/delete with index maintenance
- Partial and composite indexes
- Scans, index lookups and page-based pagination
- Aggregated resolution errors
- Re-indexing on attach (new, changed, removed, legacy indexes)
- Row migrations on read
- Row model validation
- Index verification
- Row change subscriptions
"""

import asyncio

import pytest
from pydantic import BaseModel

from mergedb import (
    AggregateQueryError,
    CollectionSchema,
    Database,
    ResolutionError,
    RowCreated,
    RowDeleted,
    RowUpdated,
    RowValidationError,
    SchemaDeclarationError,
    UnavailableError,
)
from mergedb.repo import InMemoryRepo


class Post(BaseModel):
    uri: str
    title: str
    author: str | None = None


class Score(BaseModel):
    points: int


async def index_doc(collection, index_name):
    """Current value of a collection's index document."""
    descriptor = (await collection.get())["indexes"][index_name]
    return (await collection.repo.find(descriptor["indexDocumentId"])).doc()


async def collection_doc_id(db, name):
    return (await db.get())["collections"][name]


@pytest.fixture
def repo():
    """Create a fresh repository."""
    return InMemoryRepo()


@pytest.fixture
def db(repo):
    """Database with a posts collection indexed by uri."""
    return Database(
        repo,
        collections={
            "posts": CollectionSchema(
                indexes={"uri": "uri", "by_author_year": ("author", "year")},
            ),
        },
    )


@pytest.fixture
def posts(db):
    return db.collections["posts"]


class TestCreate:
    """Tests for Collection.create()."""

    @pytest.mark.asyncio
    async def test_create_then_find_by_index(self, posts):
        """A created row is found through its index."""
        created = await posts.create({"uri": "test", "title": "Test"})

        rows = (await posts.find_by_index("uri", "test")).unwrap()

        assert len(rows) == 1
        assert rows[0].id == created.id
        assert rows[0].row["title"] == "Test"

    @pytest.mark.asyncio
    async def test_stamps_version_and_collection(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})

        assert created.row["_mvid"] == 0
        assert created.row["_collection"] == "posts"

    @pytest.mark.asyncio
    async def test_registers_with_creation_marker(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})

        assert (await posts.get())["byId"] == {created.id: 0}

    @pytest.mark.asyncio
    async def test_flushes_touched_documents(self, posts, repo):
        """One flush covers row, collection and index documents."""
        created = await posts.create({"uri": "a", "title": "A"})
        collection = await posts.get()

        flushed = repo.flush_calls[-1]
        assert created.id in flushed
        assert await posts.id() in flushed
        assert collection["indexes"]["uri"]["indexDocumentId"] in flushed

    @pytest.mark.asyncio
    async def test_index_bucket_layout(self, posts):
        """Index documents map serialized keys to row id sets."""
        created = await posts.create({"uri": "test", "title": "Test"})

        assert await index_doc(posts, "uri") == {'"test"': {created.id: True}}

    @pytest.mark.asyncio
    async def test_partial_index(self, posts):
        """Rows with a null key field are left out of that index only."""
        created = await posts.create({"uri": None, "title": "No uri"})

        assert await index_doc(posts, "uri") == {}
        assert (await posts.find()).unwrap()[0].id == created.id
        assert (await posts.find_by_index("uri", None)).unwrap() == []

    @pytest.mark.asyncio
    async def test_composite_index(self, posts):
        """Composite keys are looked up with a list of values."""
        created = await posts.create({"uri": "a", "title": "A", "author": "ann", "year": 2024})
        await posts.create({"uri": "b", "title": "B", "author": "ann", "year": 2023})

        rows = (await posts.find_by_index("by_author_year", ["ann", 2024])).unwrap()

        assert [r.id for r in rows] == [created.id]
        assert '"ann"|2024' in await index_doc(posts, "by_author_year")

    @pytest.mark.asyncio
    async def test_composite_index_skips_partial_rows(self, posts):
        await posts.create({"uri": "a", "title": "A", "author": "ann"})

        assert await index_doc(posts, "by_author_year") == {}

    @pytest.mark.asyncio
    async def test_concurrent_creates_all_indexed(self, posts):
        """Concurrent writers never lose index entries."""
        created = await asyncio.gather(
            *(posts.create({"uri": "same", "title": f"Post {i}"}) for i in range(20))
        )

        bucket = (await index_doc(posts, "uri"))['"same"']
        assert set(bucket) == {c.id for c in created}


class TestUpdate:
    """Tests for Collection.update()."""

    @pytest.mark.asyncio
    async def test_moves_between_buckets(self, posts):
        """Changing a key field moves the row to the new bucket."""
        created = await posts.create({"uri": "a", "title": "A"})

        await posts.update(created.id, lambda row: row.update(uri="b"))

        assert (await posts.find_by_index("uri", "a")).unwrap() == []
        rows = (await posts.find_by_index("uri", "b")).unwrap()
        assert [r.id for r in rows] == [created.id]
        assert await index_doc(posts, "uri") == {'"b"': {created.id: True}}

    @pytest.mark.asyncio
    async def test_key_to_null_and_back(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})

        await posts.update(created.id, lambda row: row.update(uri=None))
        assert await index_doc(posts, "uri") == {}

        await posts.update(created.id, lambda row: row.update(uri="c"))
        assert await index_doc(posts, "uri") == {'"c"': {created.id: True}}

    @pytest.mark.asyncio
    async def test_bumps_marker(self, posts):
        """Updates replace the creation marker with a timestamp."""
        created = await posts.create({"uri": "a", "title": "A"})

        await posts.update(created.id, lambda row: row.update(title="B"))
        first = (await posts.get())["byId"][created.id]
        await posts.update(created.id, lambda row: row.update(title="C"))
        second = (await posts.get())["byId"][created.id]

        assert 0 < first < second

    @pytest.mark.asyncio
    async def test_returns_new_value(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})

        updated = await posts.update(created.id, lambda row: row.update(title="B"))

        assert updated.row["title"] == "B"
        assert (await posts.find_by_id(created.id)).row["title"] == "B"

    @pytest.mark.asyncio
    async def test_reserved_fields_restored(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})

        def clobber(row):
            row["_mvid"] = 99
            del row["_collection"]

        updated = await posts.update(created.id, clobber)

        assert updated.row["_mvid"] == 0
        assert updated.row["_collection"] == "posts"

    @pytest.mark.asyncio
    async def test_raising_fn_leaves_row_untouched(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})

        def broken(row):
            row["uri"] = "b"
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await posts.update(created.id, broken)

        assert (await posts.find_by_id(created.id)).row["uri"] == "a"
        assert await index_doc(posts, "uri") == {'"a"': {created.id: True}}

    @pytest.mark.asyncio
    async def test_unknown_row(self, posts):
        with pytest.raises(UnavailableError):
            await posts.update("missing", lambda row: None)


class TestDelete:
    """Tests for Collection.delete()."""

    @pytest.mark.asyncio
    async def test_removes_everywhere(self, posts, repo):
        """A deleted row is gone from byId, every index and the repository."""
        created = await posts.create({"uri": "a", "title": "A", "author": "ann", "year": 1})
        kept = await posts.create({"uri": "a", "title": "Kept"})

        await posts.delete(created.id)

        assert created.id not in (await posts.get())["byId"]
        assert await index_doc(posts, "uri") == {'"a"': {kept.id: True}}
        assert await index_doc(posts, "by_author_year") == {}
        assert not repo.contains(created.id)
        assert [r.id for r in (await posts.find()).unwrap()] == [kept.id]

    @pytest.mark.asyncio
    async def test_find_by_id_after_delete(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})
        await posts.delete(created.id)

        with pytest.raises(UnavailableError):
            await posts.find_by_id(created.id)

    @pytest.mark.asyncio
    async def test_flushes_row_id(self, posts, repo):
        """The deleted row id is part of the flush so storage drops it."""
        created = await posts.create({"uri": "a", "title": "A"})

        await posts.delete(created.id)

        assert created.id in repo.flush_calls[-1]

    @pytest.mark.asyncio
    async def test_unknown_row(self, posts):
        with pytest.raises(UnavailableError):
            await posts.delete("missing")


class TestReads:
    """Tests for find(), find_by_id(), count() and ids()."""

    @pytest.mark.asyncio
    async def test_find_by_id_unregistered(self, posts, repo):
        """Ids of documents outside the collection are unavailable."""
        stranger = repo.create({"uri": "x"})

        with pytest.raises(UnavailableError) as exc_info:
            await posts.find_by_id(stranger.document_id)

        assert exc_info.value.code == "UNAVAILABLE"
        assert exc_info.value.collection == "posts"

    @pytest.mark.asyncio
    async def test_pagination_law(self, posts):
        """find(limit=L, offset=O) is the [O*L, O*L+L) slice of find()."""
        for i in range(7):
            await posts.create({"uri": f"u{i}", "title": str(i)})
        everything = [r.id for r in (await posts.find()).unwrap()]

        for limit in (1, 2, 3, 5):
            for offset in range(4):
                page = [r.id for r in (await posts.find(limit=limit, offset=offset)).unwrap()]
                assert page == everything[offset * limit:offset * limit + limit]

    @pytest.mark.asyncio
    async def test_pagination_with_filter(self, posts):
        for i in range(6):
            await posts.create({"uri": f"u{i}", "title": str(i), "n": i})

        rows = (await posts.find(lambda row: row["n"] % 2 == 1, limit=2, offset=1)).unwrap()

        assert [r.row["n"] for r in rows] == [5]

    @pytest.mark.asyncio
    async def test_sort(self, posts):
        for n in (3, 1, 2):
            await posts.create({"uri": f"u{n}", "title": str(n), "n": n})

        rows = (await posts.find(sort=lambda a, b: a["n"] - b["n"])).unwrap()

        assert [r.row["n"] for r in rows] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_find_by_index_paginates(self, posts):
        for i in range(5):
            await posts.create({"uri": "same", "title": str(i)})
        everything = [r.id for r in (await posts.find_by_index("uri", "same")).unwrap()]

        page = (await posts.find_by_index("uri", "same", limit=2, offset=1)).unwrap()

        assert [r.id for r in page] == everything[2:4]

    @pytest.mark.asyncio
    async def test_find_by_undeclared_index_is_empty(self, posts):
        result = await posts.find_by_index("nope", "x")
        assert result.ok
        assert result.rows == []

    @pytest.mark.asyncio
    async def test_count_and_ids(self, posts):
        first = await posts.create({"uri": "a", "title": "A"})
        second = await posts.create({"uri": "b", "title": "B"})

        assert await posts.count() == 2
        assert await posts.ids() == [first.id, second.id]


class TestResolutionErrors:
    """Tests for partial failures during bulk reads."""

    @pytest.mark.asyncio
    async def test_find_aggregates_failures(self, posts, repo):
        """Unresolvable rows turn the whole result into an aggregate error."""
        lost = await posts.create({"uri": "a", "title": "A"})
        await posts.create({"uri": "b", "title": "B"})
        repo.drop(lost.id)

        rows, error = await posts.find()

        assert rows is None
        assert isinstance(error, AggregateQueryError)
        assert len(error) == 1
        assert isinstance(error.errors[0], ResolutionError)
        assert error.errors[0].document_id == lost.id

    @pytest.mark.asyncio
    async def test_unresolved_rows_outside_page_do_not_fail(self, posts, repo):
        """Plain pagination never resolves rows outside the page."""
        lost = await posts.create({"uri": "a", "title": "A"})
        for i in range(3):
            await posts.create({"uri": f"u{i}", "title": str(i)})
        repo.drop(lost.id)

        result = await posts.find(limit=2, offset=1)

        assert result.ok
        assert len(result.rows) == 2

    @pytest.mark.asyncio
    async def test_find_by_index_aggregates_failures(self, posts, repo):
        lost = await posts.create({"uri": "a", "title": "A"})
        repo.fail_next_find(lost.id)

        result = await posts.find_by_index("uri", "a")

        assert not result.ok
        assert [e.document_id for e in result.error] == [lost.id]
        # Only that one lookup failed
        assert (await posts.find_by_index("uri", "a")).ok

    @pytest.mark.asyncio
    async def test_unresolvable_index_document_raises(self, posts, repo):
        await posts.create({"uri": "a", "title": "A"})
        index_id = (await posts.get())["indexes"]["uri"]["indexDocumentId"]
        repo.fail_next_find(index_id)

        with pytest.raises(ResolutionError):
            await posts.find_by_index("uri", "a")

    @pytest.mark.asyncio
    async def test_find_by_id_unresolvable(self, posts, repo):
        lost = await posts.create({"uri": "a", "title": "A"})
        repo.drop(lost.id)

        with pytest.raises(UnavailableError):
            await posts.find_by_id(lost.id)


class TestReindex:
    """Tests for re-indexing when index declarations change."""

    async def _seed(self, repo, schema, rows):
        db = Database(repo, collections={"posts": schema})
        created = [await db.collections["posts"].create(row) for row in rows]
        return await db.id(), created

    @pytest.mark.asyncio
    async def test_new_index_covers_existing_rows(self, repo):
        db_id, created = await self._seed(
            repo,
            CollectionSchema(),
            [{"uri": "a", "title": "A"}, {"uri": "b", "title": "B"}, {"title": "no uri"}],
        )

        db = Database(
            repo,
            collections={"posts": CollectionSchema(indexes={"uri": "uri"})},
            database_document_id=db_id,
        )
        posts = db.collections["posts"]

        rows = (await posts.find_by_index("uri", "b")).unwrap()
        assert [r.id for r in rows] == [created[1].id]
        assert await posts.verify_indexes() == []

    @pytest.mark.asyncio
    async def test_changed_key_replaces_index_document(self, repo):
        db_id, created = await self._seed(
            repo,
            CollectionSchema(indexes={"uri": "uri"}),
            [{"uri": "a", "site": "x", "title": "A"}],
        )
        old_db = Database(repo, database_document_id=db_id)
        collection_id = await collection_doc_id(old_db, "posts")
        old_index_id = (await repo.find(collection_id)).doc()["indexes"]["uri"]["indexDocumentId"]

        db = Database(
            repo,
            collections={"posts": CollectionSchema(indexes={"uri": ("uri", "site")})},
            database_document_id=db_id,
        )
        posts = db.collections["posts"]
        rows = (await posts.find_by_index("uri", ["a", "x"])).unwrap()

        assert [r.id for r in rows] == [created[0].id]
        descriptor = (await posts.get())["indexes"]["uri"]
        assert descriptor["key"] == ["uri", "site"]
        assert descriptor["indexDocumentId"] != old_index_id
        assert not repo.contains(old_index_id)

    @pytest.mark.asyncio
    async def test_removed_index_is_discarded(self, repo):
        db_id, _ = await self._seed(
            repo, CollectionSchema(indexes={"uri": "uri"}), [{"uri": "a", "title": "A"}]
        )
        db = Database(repo, collections={"posts": CollectionSchema()}, database_document_id=db_id)
        collection_id = await collection_doc_id(db, "posts")
        old_index_id = (await repo.find(collection_id)).doc()["indexes"]["uri"]["indexDocumentId"]

        posts = db.collections["posts"]

        assert (await posts.get())["indexes"] == {}
        assert not repo.contains(old_index_id)

    @pytest.mark.asyncio
    async def test_legacy_descriptor_rebuilt(self, repo):
        """Descriptors stored as a bare document id are re-indexed."""
        db_id, created = await self._seed(
            repo, CollectionSchema(), [{"uri": "a", "title": "A"}]
        )
        legacy = repo.create({})
        probe = Database(repo, database_document_id=db_id)
        collection = await repo.find(await collection_doc_id(probe, "posts"))
        collection.change(lambda doc: doc["indexes"].__setitem__("uri", legacy.document_id))

        db = Database(
            repo,
            collections={"posts": CollectionSchema(indexes={"uri": "uri"})},
            database_document_id=db_id,
        )
        posts = db.collections["posts"]
        rows = (await posts.find_by_index("uri", "a")).unwrap()

        assert [r.id for r in rows] == [created[0].id]
        assert (await posts.get())["indexes"]["uri"]["key"] == "uri"
        assert not repo.contains(legacy.document_id)

    @pytest.mark.asyncio
    async def test_failed_reindex_leaves_descriptors(self, repo):
        """An unresolvable row aborts re-indexing without writing descriptors."""
        db_id, created = await self._seed(
            repo,
            CollectionSchema(),
            [{"uri": "a", "title": "A"}, {"uri": "b", "title": "B"}],
        )
        repo.drop(created[0].id)
        documents_before = repo.document_count()

        db = Database(
            repo,
            collections={"posts": CollectionSchema(indexes={"uri": "uri"})},
            database_document_id=db_id,
        )

        with pytest.raises(AggregateQueryError):
            await db.collections["posts"].count()

        collection = await repo.find(await collection_doc_id(db, "posts"))
        assert collection.doc()["indexes"] == {}
        assert repo.document_count() == documents_before

    @pytest.mark.asyncio
    async def test_reindex_uses_migrated_rows(self, repo):
        """Rows are migrated before their keys are computed."""
        db_id, created = await self._seed(
            repo, CollectionSchema(), [{"uri": "a", "title": "Hello"}]
        )

        def add_slug(row):
            row["slug"] = row["title"].lower()

        db = Database(
            repo,
            collections={
                "posts": CollectionSchema(indexes={"slug": "slug"}, row_migrations={1: add_slug}),
            },
            database_document_id=db_id,
        )
        rows = (await db.collections["posts"].find_by_index("slug", "hello")).unwrap()

        assert [r.id for r in rows] == [created[0].id]
        assert rows[0].row["_mvid"] == 1


class TestRowMigrations:
    """Tests for row migrations."""

    @pytest.mark.asyncio
    async def test_stale_rows_migrated_on_read(self, repo):
        db = Database(repo, collections={"posts": CollectionSchema()})
        created = await db.collections["posts"].create({"title": "A"})
        db_id = await db.id()

        calls = []

        def add_views(row):
            calls.append(row["title"])
            row["views"] = 0

        upgraded = Database(
            repo,
            collections={"posts": CollectionSchema(row_migrations={1: add_views})},
            database_document_id=db_id,
        )
        posts = upgraded.collections["posts"]

        row = (await posts.find_by_id(created.id)).row
        assert row["views"] == 0
        assert row["_mvid"] == 1

        await posts.find_by_id(created.id)
        assert calls == ["A"]

    @pytest.mark.asyncio
    async def test_new_rows_created_at_latest_version(self, repo):
        """New rows skip migrations and start at the latest version."""
        calls = []
        db = Database(
            repo,
            collections={
                "posts": CollectionSchema(row_migrations={1: calls.append, 2: calls.append}),
            },
        )

        created = await db.collections["posts"].create({"title": "A"})

        assert created.row["_mvid"] == 2
        assert calls == []


class TestValidation:
    """Tests for row model validation."""

    @pytest.fixture
    def posts(self, repo):
        db = Database(
            repo,
            collections={"posts": CollectionSchema(indexes={"uri": "uri"}, row_model=Post)},
        )
        return db.collections["posts"]

    @pytest.mark.asyncio
    async def test_valid_dict(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})
        assert created.row["author"] is None

    @pytest.mark.asyncio
    async def test_model_instance(self, posts):
        created = await posts.create(Post(uri="a", title="A", author="ann"))
        assert created.row["author"] == "ann"
        assert (await posts.find_by_index("uri", "a")).unwrap()[0].id == created.id

    @pytest.mark.asyncio
    async def test_invalid_row_rejected(self, posts, repo):
        await posts.count()
        documents_before = repo.document_count()

        with pytest.raises(RowValidationError) as exc_info:
            await posts.create({"uri": "a"})

        assert exc_info.value.code == "VALIDATION_ERROR"
        assert exc_info.value.errors[0]["loc"] == ("title",)
        assert await posts.count() == 0
        assert repo.document_count() == documents_before

    @pytest.mark.asyncio
    async def test_invalid_update_rejected(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})

        with pytest.raises(RowValidationError):
            await posts.update(created.id, lambda row: row.update(title=None))

        assert (await posts.find_by_id(created.id)).row["title"] == "A"

    @pytest.mark.asyncio
    async def test_update_stores_coerced_value(self, repo):
        """Updates keep the model's types, so the typed key finds the row."""
        db = Database(
            repo,
            collections={"scores": CollectionSchema(indexes={"points": "points"}, row_model=Score)},
        )
        scores = db.collections["scores"]
        created = await scores.create({"points": "5"})
        assert created.row["points"] == 5

        updated = await scores.update(created.id, lambda row: row.update(points="7"))

        assert updated.row["points"] == 7
        assert updated.row["_mvid"] == 0
        assert updated.row["_collection"] == "scores"
        rows = (await scores.find_by_index("points", 7)).unwrap()
        assert [r.id for r in rows] == [created.id]
        assert (await scores.find_by_index("points", "7")).unwrap() == []
        assert await scores.verify_indexes() == []

    def test_index_on_unknown_field(self):
        with pytest.raises(SchemaDeclarationError):
            CollectionSchema(indexes={"slug": "slug"}, row_model=Post)

    def test_empty_index_key(self):
        with pytest.raises(SchemaDeclarationError):
            CollectionSchema(indexes={"nothing": ()})


class TestVerifyIndexes:
    """Tests for Collection.verify_indexes()."""

    @pytest.mark.asyncio
    async def test_consistent(self, posts):
        created = await posts.create({"uri": "a", "title": "A"})
        await posts.update(created.id, lambda row: row.update(uri="b"))

        assert await posts.verify_indexes() == []

    @pytest.mark.asyncio
    async def test_detects_missing_and_stale_entries(self, posts, repo):
        created = await posts.create({"uri": "a", "title": "A"})
        index_id = (await posts.get())["indexes"]["uri"]["indexDocumentId"]
        index_handle = await repo.find(index_id)

        def corrupt(doc):
            doc.clear()
            doc['"a"'] = {"ghost": True}

        index_handle.change(corrupt)
        issues = await posts.verify_indexes()

        assert any(f"row {created.id} missing" in issue for issue in issues)
        assert any("stale row ghost" in issue for issue in issues)


class TestSubscribe:
    """Tests for Collection.subscribe()."""

    @pytest.mark.asyncio
    async def test_row_events(self, posts):
        events = []
        subscription = await posts.subscribe(events.append)

        created = await posts.create({"uri": "a", "title": "A"})
        await subscription.drain()
        await posts.update(created.id, lambda row: row.update(title="B"))
        await subscription.drain()
        await posts.delete(created.id)
        await subscription.drain()
        subscription.unsubscribe()

        assert [type(e) for e in events] == [RowCreated, RowUpdated, RowDeleted]
        assert events[0].row["title"] == "A"
        assert events[1].row["title"] == "B"
        assert events[2] == RowDeleted(created.id)

    @pytest.mark.asyncio
    async def test_unsubscribe(self, posts):
        events = []
        subscription = await posts.subscribe(events.append)
        subscription()

        await posts.create({"uri": "a", "title": "A"})

        assert events == []
        assert not subscription.active
