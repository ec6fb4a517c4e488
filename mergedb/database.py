"""
Database composer: named documents and collections under one root document.

The root document holds two maps:

    {"_mvid": 1, "documents": {name: id}, "collections": {name: id}}

Its id is the anchor for reattaching to the same database after a restart.
It is supplied by the caller, read from an injected key-value store, or,
when neither knows one, a new root is created (and stored if a key-value
store was given).

Every named child is created or attached lazily on first access and
migrated with its declared migrations. A child that had to be linked under
the root is flushed together with the root in one barrier.

Invariants:
    - The composer is the only writer of the root's ``documents`` and
      ``collections`` maps
    - A name is linked to at most one document id, never relinked
    - Children are fully migrated (and collections re-indexed) before use

How to change safely:
    - Root migrations are append-only, like any other migration
    - Do not construct two Database instances over the same root and
      collection names concurrently; nothing coordinates them
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Mapping
from typing import Any

from .collection import Collection, CollectionSchema
from .config import DatabaseConfig
from .document import (
    UNMIGRATED,
    Document,
    DocumentSchema,
    Migrations,
    init_or_create_document,
    migrate,
)
from .errors import ResolutionError
from .repo.base import DocHandle, DocumentId, DocumentRepo, KeyValueStore, RepoError

logger = logging.getLogger(__name__)


def _init_root(root: dict[str, Any]) -> None:
    root["documents"] = {}
    root["collections"] = {}


DATABASE_MIGRATIONS: Migrations = {
    1: _init_root,
}


class Database(Document):
    """Root of a set of named documents and collections.

    Attributes:
        repo: Document repository
        documents: name -> Document, one per declared document schema
        collections: name -> Collection, one per declared collection schema

    Example:
        >>> db = Database(
        ...     repo,
        ...     documents={"settings": DocumentSchema(migrations={1: defaults})},
        ...     collections={"posts": CollectionSchema(indexes={"uri": "uri"})},
        ...     id_store=SqliteStorage("app.sqlite3"),
        ... )
        >>> await db.collections["posts"].create({"uri": "hello", "title": "Hello"})
    """

    def __init__(
        self,
        repo: DocumentRepo,
        documents: Mapping[str, DocumentSchema] | None = None,
        collections: Mapping[str, CollectionSchema] | None = None,
        database_document_id: DocumentId | Awaitable[DocumentId | None] | None = None,
        id_store: KeyValueStore | None = None,
        config: DatabaseConfig | None = None,
    ) -> None:
        """Initialize the database. Nothing is resolved until first use.

        Args:
            repo: Document repository
            documents: Singleton document declarations by name
            collections: Collection declarations by name
            database_document_id: Root document id, or an awaitable of it
            id_store: Key-value store remembering the root document id
            config: Database configuration
        """
        super().__init__(repo, self._init_root_handle)
        self.config = config or DatabaseConfig()
        self._database_document_id = database_document_id
        self._id_store = id_store
        self._link_lock = asyncio.Lock()

        self.documents: dict[str, Document] = {
            name: self._create_document(name, schema) for name, schema in (documents or {}).items()
        }
        self.collections: dict[str, Collection] = {
            name: self._create_collection(name, schema)
            for name, schema in (collections or {}).items()
        }

    async def _root_document_id(self) -> DocumentId | None:
        document_id = self._database_document_id
        if inspect.isawaitable(document_id):
            document_id = await document_id
        if document_id is None and self._id_store is not None:
            document_id = await self._id_store.get(self.config.root_id_key)
        return document_id

    async def _init_root_handle(self) -> DocHandle:
        document_id = await self._root_document_id()
        handle = await init_or_create_document(self.repo, DATABASE_MIGRATIONS, document_id)

        if document_id is None and self._id_store is not None:
            await self._id_store.set(self.config.root_id_key, handle.document_id)

        logger.info(
            "Database attached",
            extra={"document_id": handle.document_id, "created": document_id is None},
        )
        return handle

    async def _init_or_create_child(
        self,
        kind: str,
        name: str,
        initial_value: dict[str, Any],
        migrations: Migrations,
    ) -> DocHandle:
        """Attach the child linked under ``kind``/``name`` or create and link it.

        Args:
            kind: "documents" or "collections"
            name: Child name
            initial_value: Value of a newly created child
            migrations: Child migrations

        Returns:
            The migrated child handle

        Raises:
            ResolutionError: If the linked child document cannot be resolved
        """
        root_handle = await self.handle()
        to_flush: list[DocumentId] = []

        async with self._link_lock:
            document_id = root_handle.doc()[kind].get(name)
            if document_id is None:
                child = self.repo.create({"_mvid": UNMIGRATED, **initial_value})
                root_handle.change(
                    lambda root: root[kind].__setitem__(name, child.document_id)
                )
                to_flush.append(root_handle.document_id)
                logger.info(
                    "Linked new child document",
                    extra={"kind": kind, "name": name, "document_id": child.document_id},
                )
            else:
                try:
                    child = await self.repo.find(document_id)
                except RepoError as e:
                    raise ResolutionError(
                        f"Linked {kind[:-1]} '{name}' cannot be resolved: {e}",
                        document_id=document_id,
                    ) from e

        if migrate(child, migrations) or to_flush:
            to_flush.append(child.document_id)
        if to_flush:
            await self.repo.flush(to_flush)

        return child

    def _create_document(self, name: str, schema: DocumentSchema) -> Document:
        async def resolve() -> DocHandle:
            return await self._init_or_create_child("documents", name, {}, schema.migrations)

        return Document(self.repo, resolve)

    def _create_collection(self, name: str, schema: CollectionSchema) -> Collection:
        async def resolve() -> DocHandle:
            return await self._init_or_create_child(
                "collections",
                name,
                {"name": name, "byId": {}, "indexes": {}},
                schema.migrations,
            )

        return Collection(self.repo, name, schema, resolve, config=self.config)

    async def close(self) -> None:
        """Stop row subscriptions, then flush everything and close the repository."""
        for collection in self.collections.values():
            await collection.close_subscriptions()
        await self.repo.close()
