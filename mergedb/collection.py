"""
Collection engine: indexed rows over independently mergeable documents.

A collection is made of:
- one collection document: ``{_mvid, name, byId, indexes}`` where ``byId``
  maps row id -> last-touched marker (0 right after creation) and
  ``indexes`` maps index name -> ``{key, indexDocumentId}``
- one document per row
- one index document per declared secondary index (see mergedb.index)

There is no cross-document transaction. Each operation mutates the
documents it touches one after another and ends with a single flush over
all of them.

Invariants:
    - Every id in ``byId`` refers to a row document (eventually; a crash
      between writes can leave it transiently stale)
    - Every id in an index bucket is in ``byId``, and every row whose key
      fields are all non-null is in exactly the bucket of its key
    - Rows are created at the latest row migration version and migrated on
      read when stale
    - Index documents are never reused when a key definition changes

How to change safely:
    - Keep the write order: row, byId, index buckets, marker, flush
    - Index definition changes must go through the attach re-index pass
    - Writers in other processes can still race on index buckets; the
      per-collection write lock only covers this process
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .changes import BY_ID, CREATED_MARKER, ChangeCallback, ChangeTranslator, Subscription
from .config import DatabaseConfig
from .document import Document, Migrations, latest_version, migrate, validate_migrations
from .errors import (
    AggregateQueryError,
    ResolutionError,
    RowValidationError,
    SchemaDeclarationError,
    UnavailableError,
)
from .index import (
    IndexDescriptor,
    IndexKey,
    add_to_bucket,
    diff_index_keys,
    index_key_for_row,
    index_keys_for_row,
    normalize_key,
    plan_reindex,
    remove_from_bucket,
    serialize_values,
)
from .query import FindOptions, QueryResult, RowComparator, RowFilter, RowResult
from .repo.base import DocHandle, DocumentId, DocumentRepo, RepoError

logger = logging.getLogger(__name__)

RowChangeFn = Callable[[dict[str, Any]], None]

RESERVED_FIELDS = ("_mvid", "_collection")


@dataclass(frozen=True)
class CollectionSchema:
    """Declaration of a collection.

    Attributes:
        indexes: index name -> field name or tuple of field names
        row_migrations: migrations applied to every row document
        row_model: optional pydantic model rows are validated against;
            index keys must then name fields of the model
        migrations: migrations applied to the collection document itself

    Example:
        >>> class Post(BaseModel):
        ...     uri: str
        ...     title: str
        >>> posts = CollectionSchema(indexes={"uri": "uri"}, row_model=Post)
    """

    indexes: Mapping[str, IndexKey] = field(default_factory=dict)
    row_migrations: Migrations = field(default_factory=dict)
    row_model: type[BaseModel] | None = None
    migrations: Migrations = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_migrations(self.row_migrations)
        validate_migrations(self.migrations)

        for name, key in self.indexes.items():
            fields = normalize_key(key)
            if not name:
                raise SchemaDeclarationError("Index names cannot be empty")
            if not fields or not all(fields):
                raise SchemaDeclarationError(f"Index '{name}' must name at least one field")
            if self.row_model is not None:
                known = set(self.row_model.model_fields) | set(RESERVED_FIELDS)
                unknown = [f for f in fields if f not in known]
                if unknown:
                    raise SchemaDeclarationError(
                        f"Index '{name}' references fields not defined on "
                        f"{self.row_model.__name__}: {unknown}"
                    )

    @property
    def row_version(self) -> int:
        """Migration version new rows are created at."""
        return latest_version(self.row_migrations)


class Collection(Document):
    """Create, read, update, delete, query and subscribe over rows.

    The collection document is attached lazily on first use. Attaching
    reconciles the declared indexes with the stored ones and re-indexes
    every new or changed index before any operation proceeds.

    Thread safety:
        Designed for one event loop. Writes are queued behind a
        per-collection asyncio lock unless ``serialize_writes`` is off.

    Example:
        >>> posts = db.collections["posts"]
        >>> created = await posts.create({"uri": "hello", "title": "Hello"})
        >>> rows = (await posts.find_by_index("uri", "hello")).unwrap()
        >>> rows[0].id == created.id
        True
    """

    def __init__(
        self,
        repo: DocumentRepo,
        name: str,
        schema: CollectionSchema,
        resolver: Callable[[], Awaitable[DocHandle]],
        config: DatabaseConfig | None = None,
    ) -> None:
        """Initialize the collection.

        Args:
            repo: Document repository
            name: Collection name, stamped on every row as ``_collection``
            schema: Collection declaration
            resolver: Coroutine function returning the (migrated)
                collection document handle
            config: Database configuration
        """
        super().__init__(repo, self._attach)
        self.name = name
        self.schema = schema
        self.config = config or DatabaseConfig()
        self.row_version = schema.row_version
        self._collection_resolver = resolver
        self._indexes: dict[str, tuple[str, ...]] = {
            index_name: normalize_key(key) for index_name, key in schema.indexes.items()
        }
        self._write_lock = asyncio.Lock() if self.config.serialize_writes else None
        self._last_marker = 0
        self._subscriptions: list[Subscription] = []

    @property
    def index_names(self) -> list[str]:
        return list(self._indexes)

    # Attach and re-index

    async def _attach(self) -> DocHandle:
        handle = await self._collection_resolver()
        await self._reconcile_indexes(handle)
        logger.info(
            "Collection attached",
            extra={"collection": self.name, "document_id": handle.document_id},
        )
        return handle

    async def _reconcile_indexes(self, handle: DocHandle) -> None:
        collection = handle.doc()
        stored = {
            index_name: IndexDescriptor.from_dict(value)
            for index_name, value in collection.get("indexes", {}).items()
        }
        plan = plan_reindex(self._indexes, stored)
        if not plan:
            return

        logger.info(
            "Re-indexing collection",
            extra={
                "collection": self.name,
                "new": plan.new,
                "changed": plan.changed,
                "removed": plan.removed,
            },
        )

        built = {index_name: self.repo.create({}) for index_name in plan.to_build}
        migrated_rows: list[DocumentId] = []
        if built:
            try:
                migrated_rows = await self._populate_indexes(collection, built)
            except Exception:
                for index_handle in built.values():
                    index_handle.delete()
                raise

        def write_descriptors(doc: dict[str, Any]) -> None:
            indexes = doc.setdefault("indexes", {})
            for index_name in plan.removed:
                indexes.pop(index_name, None)
            for index_name, index_handle in built.items():
                descriptor = IndexDescriptor(self._indexes[index_name], index_handle.document_id)
                indexes[index_name] = descriptor.to_dict()

        handle.change(write_descriptors)

        discarded = [stored[index_name].index_document_id for index_name in plan.changed + plan.removed]
        for document_id in discarded:
            try:
                await self.repo.delete(document_id)
            except RepoError as e:
                logger.warning(
                    "Discarded index document was already gone",
                    extra={"collection": self.name, "document_id": document_id, "error": str(e)},
                )

        await self.repo.flush(
            [
                handle.document_id,
                *(index_handle.document_id for index_handle in built.values()),
                *migrated_rows,
                *discarded,
            ]
        )

    async def _populate_indexes(
        self,
        collection: dict[str, Any],
        built: dict[str, DocHandle],
    ) -> list[DocumentId]:
        """Insert every existing row into the freshly built index documents.

        Returns:
            Ids of rows that were migrated while being read

        Raises:
            AggregateQueryError: If any row cannot be resolved
        """
        row_ids = list(collection.get(BY_ID, {}))
        results = await asyncio.gather(
            *(self._open_row(row_id) for row_id in row_ids),
            return_exceptions=True,
        )

        errors: list[Exception] = []
        migrated: list[DocumentId] = []
        buckets: dict[str, dict[str, list[DocumentId]]] = {index_name: {} for index_name in built}

        for row_id, result in zip(row_ids, results):
            if isinstance(result, ResolutionError):
                errors.append(result)
                continue
            if isinstance(result, BaseException):
                raise result
            row_handle, was_migrated = result
            if was_migrated:
                migrated.append(row_id)
            row = row_handle.doc()
            for index_name in built:
                bucket = index_key_for_row(row, self._indexes[index_name])
                if bucket is not None:
                    buckets[index_name].setdefault(bucket, []).append(row_id)

        if errors:
            raise AggregateQueryError(
                errors,
                message=f"Re-indexing collection '{self.name}' failed for {len(errors)} row(s)",
            )

        for index_name, index_handle in built.items():
            def fill(doc: dict[str, Any], entries=buckets[index_name]) -> None:
                for bucket, ids in entries.items():
                    for row_id in ids:
                        add_to_bucket(doc, bucket, row_id)

            index_handle.change(fill)

        logger.info(
            "Re-indexed rows",
            extra={"collection": self.name, "rows": len(row_ids), "indexes": list(built)},
        )
        return migrated

    # Helpers

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[None]:
        if self._write_lock is None:
            yield
            return
        async with self._write_lock:
            yield

    def _next_marker(self) -> int:
        marker = max(int(time.time() * 1000), self._last_marker + 1)
        self._last_marker = marker
        return marker

    def _validate(self, row: Mapping[str, Any]) -> dict[str, Any] | None:
        if self.schema.row_model is None:
            return None
        try:
            model = self.schema.row_model.model_validate(
                {k: v for k, v in row.items() if k not in RESERVED_FIELDS}
            )
        except PydanticValidationError as e:
            raise RowValidationError(self.name, e.errors(include_url=False)) from e
        return model.model_dump(mode="json")

    def _prepare_row(self, value: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
        if isinstance(value, BaseModel):
            row = value.model_dump(mode="json")
        else:
            row = dict(value)
        validated = self._validate(row)
        if validated is not None:
            row = validated
        row["_mvid"] = self.row_version
        row["_collection"] = self.name
        return row

    async def _open_row(self, row_id: DocumentId) -> tuple[DocHandle, bool]:
        """Resolve a row document and migrate it if stale.

        Raises:
            ResolutionError: If the repository cannot resolve the id
            MigrationError: If a row migration raises
        """
        try:
            row_handle = await self.repo.find(row_id)
        except RepoError as e:
            raise ResolutionError(
                f"Row '{row_id}' of collection '{self.name}' cannot be resolved: {e}",
                document_id=row_id,
            ) from e
        return row_handle, migrate(row_handle, self.schema.row_migrations)

    async def _open_registered(self, collection_handle: DocHandle, row_id: DocumentId) -> DocHandle:
        if row_id not in collection_handle.doc().get(BY_ID, {}):
            raise UnavailableError(row_id, self.name, "not registered in collection")
        try:
            row_handle, _ = await self._open_row(row_id)
        except ResolutionError as e:
            raise UnavailableError(row_id, self.name, str(e.__cause__ or e)) from e
        return row_handle

    async def _index_handles(
        self,
        collection_handle: DocHandle,
        index_names: list[str],
        create: bool,
    ) -> dict[str, DocHandle]:
        """Resolve the index documents of the given indexes.

        Args:
            collection_handle: Collection document
            index_names: Declared index names to resolve
            create: Create (and register) index documents that are missing

        Raises:
            ResolutionError: If a registered index document cannot be resolved
        """
        indexes = collection_handle.doc().get("indexes", {})
        handles: dict[str, DocHandle] = {}

        async def resolve(index_name: str) -> None:
            stored = indexes.get(index_name)
            if stored is not None:
                descriptor = IndexDescriptor.from_dict(stored)
                try:
                    handles[index_name] = await self.repo.find(descriptor.index_document_id)
                except RepoError as e:
                    raise ResolutionError(
                        f"Index document for '{self.name}.{index_name}' cannot be resolved: {e}",
                        document_id=descriptor.index_document_id,
                    ) from e
                return
            if not create:
                return

            index_handle = self.repo.create({})
            descriptor = IndexDescriptor(self._indexes[index_name], index_handle.document_id)
            collection_handle.change(
                lambda doc: doc.setdefault("indexes", {}).__setitem__(index_name, descriptor.to_dict())
            )
            handles[index_name] = index_handle
            logger.debug(
                "Created index document",
                extra={"collection": self.name, "index": index_name},
            )

        await asyncio.gather(*(resolve(index_name) for index_name in index_names))
        return handles

    async def _query(self, row_ids: list[DocumentId], options: FindOptions) -> QueryResult:
        selected = options.select_ids(row_ids)
        results = await asyncio.gather(
            *(self._open_row(row_id) for row_id in selected),
            return_exceptions=True,
        )

        rows: list[RowResult] = []
        errors: list[Exception] = []
        for row_id, result in zip(selected, results):
            if isinstance(result, ResolutionError):
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                rows.append(RowResult(row_id, result[0].doc()))

        if errors:
            return QueryResult.failure(AggregateQueryError(errors))
        return QueryResult.success(options.finish(rows))

    # Writes

    async def create(self, value: Mapping[str, Any] | BaseModel) -> RowResult:
        """Create a row and add it to every index its key fields resolve for.

        Args:
            value: Row fields (a dict or an instance of the row model)

        Returns:
            The new row id and its snapshot

        Raises:
            RowValidationError: If the value does not match the row model
        """
        row = self._prepare_row(value)

        async with self._writing():
            collection_handle = await self.handle()
            row_handle = self.repo.create(row)
            row_id = row_handle.document_id

            collection_handle.change(lambda doc: doc[BY_ID].__setitem__(row_id, CREATED_MARKER))

            keys = index_keys_for_row(row, self._indexes)
            index_handles = await self._index_handles(collection_handle, list(keys), create=True)
            for index_name, bucket in keys.items():
                index_handles[index_name].change(
                    lambda doc, bucket=bucket: add_to_bucket(doc, bucket, row_id)
                )

            await self.repo.flush(
                [
                    row_id,
                    collection_handle.document_id,
                    *(index_handle.document_id for index_handle in index_handles.values()),
                ]
            )

        logger.debug(
            "Row created",
            extra={"collection": self.name, "row_id": row_id, "indexes": list(keys)},
        )
        return RowResult(row_id, row_handle.doc())

    async def update(self, row_id: DocumentId, fn: RowChangeFn) -> RowResult:
        """Mutate a row in place and move it between index buckets.

        ``fn`` receives the row as a dict. ``_mvid`` and ``_collection``
        are restored after it runs. If ``fn`` raises, or the result fails
        row model validation, the row is left untouched. With a row model
        the stored row is the validated (coerced) value, as for create().

        Raises:
            UnavailableError: If the row is not part of the collection
            RowValidationError: If the updated row does not match the model
        """
        async with self._writing():
            collection_handle = await self.handle()
            row_handle = await self._open_registered(collection_handle, row_id)

            previous: dict[str, str] = {}
            current: dict[str, str] = {}

            def apply(row: dict[str, Any]) -> None:
                protected = {name: row.get(name) for name in RESERVED_FIELDS}
                previous.update(index_keys_for_row(row, self._indexes))
                fn(row)
                validated = self._validate(row)
                if validated is not None:
                    row.clear()
                    row.update(validated)
                row.update(protected)
                current.update(index_keys_for_row(row, self._indexes))

            row_handle.change(apply)

            diff = diff_index_keys(previous, current)
            index_handles: dict[str, DocHandle] = {}
            if diff:
                index_handles = await self._index_handles(
                    collection_handle, diff.index_names, create=True
                )
                for index_name, bucket in diff.removed.items():
                    index_handles[index_name].change(
                        lambda doc, bucket=bucket: remove_from_bucket(doc, bucket, row_id)
                    )
                for index_name, bucket in diff.added.items():
                    index_handles[index_name].change(
                        lambda doc, bucket=bucket: add_to_bucket(doc, bucket, row_id)
                    )

            marker = self._next_marker()
            collection_handle.change(lambda doc: doc[BY_ID].__setitem__(row_id, marker))

            await self.repo.flush(
                [
                    row_id,
                    collection_handle.document_id,
                    *(index_handle.document_id for index_handle in index_handles.values()),
                ]
            )

        logger.debug(
            "Row updated",
            extra={"collection": self.name, "row_id": row_id, "indexes": diff.index_names},
        )
        return RowResult(row_id, row_handle.doc())

    async def delete(self, row_id: DocumentId) -> None:
        """Remove a row from the collection, its indexes and the repository.

        Raises:
            UnavailableError: If the row is not part of the collection
        """
        async with self._writing():
            collection_handle = await self.handle()
            row_handle = await self._open_registered(collection_handle, row_id)
            row = row_handle.doc()

            collection_handle.change(lambda doc: doc[BY_ID].pop(row_id, None))

            keys = index_keys_for_row(row, self._indexes)
            index_handles = await self._index_handles(collection_handle, list(keys), create=False)
            for index_name, index_handle in index_handles.items():
                index_handle.change(
                    lambda doc, bucket=keys[index_name]: remove_from_bucket(doc, bucket, row_id)
                )

            row_handle.delete()

            await self.repo.flush(
                [
                    collection_handle.document_id,
                    *(index_handle.document_id for index_handle in index_handles.values()),
                    row_id,
                ]
            )

        logger.debug("Row deleted", extra={"collection": self.name, "row_id": row_id})

    # Reads

    async def find_by_id(self, row_id: DocumentId) -> RowResult:
        """Resolve one row of this collection.

        Raises:
            UnavailableError: If the id is not registered or cannot be resolved
            MigrationError: If migrating the stale row fails
        """
        collection_handle = await self.handle()
        row_handle = await self._open_registered(collection_handle, row_id)
        return RowResult(row_id, row_handle.doc())

    async def find(
        self,
        filter: RowFilter | None = None,
        *,
        sort: RowComparator | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> QueryResult:
        """Scan every row of the collection.

        Args:
            filter: Keep rows for which this returns True
            sort: Comparator over two rows
            limit: Page size
            offset: Page number (pages of ``limit`` rows)

        Returns:
            QueryResult with the rows, or with an AggregateQueryError if any
            row failed to resolve
        """
        options = FindOptions(filter=filter, sort=sort, limit=limit, offset=offset)
        collection_handle = await self.handle()
        row_ids = list(collection_handle.doc().get(BY_ID, {}))
        return await self._query(row_ids, options)

    async def find_by_index(
        self,
        index_name: str,
        values: Any,
        *,
        filter: RowFilter | None = None,
        sort: RowComparator | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> QueryResult:
        """Look rows up through a secondary index.

        Args:
            index_name: Declared index name
            values: Key value, or list/tuple of values for a composite key
            filter, sort, limit, offset: As for find()

        Returns:
            QueryResult; empty when the index has no index document
        """
        options = FindOptions(filter=filter, sort=sort, limit=limit, offset=offset)
        collection_handle = await self.handle()

        index_handles = await self._index_handles(collection_handle, [index_name], create=False)
        index_handle = index_handles.get(index_name)
        if index_handle is None:
            return QueryResult.success([])

        bucket = serialize_values(values)
        row_ids = list(index_handle.doc().get(bucket, {}))
        return await self._query(row_ids, options)

    async def count(self) -> int:
        """Number of rows registered in the collection."""
        collection_handle = await self.handle()
        return len(collection_handle.doc().get(BY_ID, {}))

    async def ids(self) -> list[DocumentId]:
        """Registered row ids in insertion order."""
        collection_handle = await self.handle()
        return list(collection_handle.doc().get(BY_ID, {}))

    async def subscribe(self, callback: ChangeCallback) -> Subscription:  # type: ignore[override]
        """Deliver RowCreated / RowUpdated / RowDeleted events to ``callback``.

        ``callback`` may be a plain function or a coroutine function.

        Returns:
            Subscription; call it (or ``unsubscribe()``) to stop delivery
        """
        collection_handle = await self.handle()

        async def resolve_row(row_id: DocumentId) -> dict[str, Any]:
            row_handle, _ = await self._open_row(row_id)
            return row_handle.doc()

        translator = ChangeTranslator(collection_handle, resolve_row, callback, collection=self.name)
        subscription = Subscription(translator)
        self._subscriptions = [s for s in self._subscriptions if s.active]
        self._subscriptions.append(subscription)
        return subscription

    async def close_subscriptions(self) -> None:
        """Stop every subscription of this collection and wait for their workers."""
        subscriptions, self._subscriptions = self._subscriptions, []
        await asyncio.gather(*(s.aclose() for s in subscriptions))

    async def verify_indexes(self) -> list[str]:
        """Check every index against the rows it should contain.

        Returns:
            Human-readable descriptions of every inconsistency found
        """
        collection_handle = await self.handle()
        by_id = collection_handle.doc().get(BY_ID, {})
        issues: list[str] = []

        rows: dict[DocumentId, dict[str, Any]] = {}
        for row_id in by_id:
            try:
                row_handle, _ = await self._open_row(row_id)
            except ResolutionError as e:
                issues.append(f"row {row_id}: unresolvable ({e})")
                continue
            rows[row_id] = row_handle.doc()

        index_handles = await self._index_handles(collection_handle, self.index_names, create=False)
        for index_name in self.index_names:
            index_handle = index_handles.get(index_name)
            if index_handle is None:
                issues.append(f"index {index_name}: no index document")
                continue
            buckets = index_handle.doc()
            key = self._indexes[index_name]

            for row_id, row in rows.items():
                bucket = index_key_for_row(row, key)
                if bucket is not None and row_id not in buckets.get(bucket, {}):
                    issues.append(f"index {index_name}: row {row_id} missing from bucket {bucket}")

            for bucket, row_ids in buckets.items():
                for row_id in row_ids:
                    if row_id not in by_id:
                        issues.append(f"index {index_name}: stale row {row_id} in bucket {bucket}")
                    elif row_id in rows and index_key_for_row(rows[row_id], key) != bucket:
                        issues.append(f"index {index_name}: row {row_id} misplaced in bucket {bucket}")

        return issues
