"""
Versioned documents and migration sequencing.

Every document managed by MergeDB (root, singleton documents, collection
documents and rows) carries an ``_mvid`` field: the schema version whose
migrations have been applied to it. Migrations are declared as a mapping
from positive version numbers to functions mutating the document in place.

Invariants:
    - ``_mvid`` never decreases
    - Each migration runs at most once per document, in ascending version
      order, as its own atomic change that also advances ``_mvid``
    - A brand-new document (``_mvid`` of -1 or missing) without declared
      migrations is stamped with the baseline version 0
    - A failing migration stops the sequence; earlier versions stay applied

How to change safely:
    - Never renumber or edit a released migration, add a new version instead
    - Gaps in version numbers are allowed and simply skipped
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import MigrationError, ResolutionError, SchemaDeclarationError
from .repo.base import ChangeFn, DocHandle, DocumentId, DocumentRepo, RepoError, Unsubscribe

logger = logging.getLogger(__name__)

# _mvid of a document that has never been migrated
UNMIGRATED = -1

Migrations = Mapping[int, Callable[[dict[str, Any]], None]]
DocumentSubscriber = Callable[[dict[str, Any]], None]


def validate_migrations(migrations: Migrations) -> None:
    """Check that every migration version is a positive integer.

    Raises:
        SchemaDeclarationError: On a non-integer or non-positive version
    """
    for version, fn in migrations.items():
        if isinstance(version, bool) or not isinstance(version, int) or version <= 0:
            raise SchemaDeclarationError(
                f"Migration versions must be positive integers, got {version!r}"
            )
        if not callable(fn):
            raise SchemaDeclarationError(f"Migration {version} is not callable")


def latest_version(migrations: Migrations) -> int:
    """Highest declared migration version, 0 when there are none."""
    return max(migrations, default=0)


def current_version(doc: Mapping[str, Any]) -> int:
    version = doc.get("_mvid")
    return UNMIGRATED if version is None else version


def migrate(handle: DocHandle, migrations: Migrations) -> bool:
    """Bring a document up to the latest declared migration version.

    Args:
        handle: Document to migrate
        migrations: Version -> in-place mutation function

    Returns:
        True if the document was mutated (callers should flush it)

    Raises:
        MigrationError: If a migration function raises. Versions applied
            before the failing one remain committed.
    """
    version = current_version(handle.doc())

    if version == UNMIGRATED and not migrations:
        handle.change(lambda doc: doc.__setitem__("_mvid", 0))
        return True

    changed = False
    for target in sorted(v for v in migrations if v > version):
        migration = migrations[target]

        def apply(doc: dict[str, Any], migration=migration, target=target) -> None:
            migration(doc)
            doc["_mvid"] = target

        try:
            handle.change(apply)
        except Exception as e:
            logger.error(
                "Migration failed",
                extra={"document_id": handle.document_id, "version": target},
            )
            raise MigrationError(target, handle.document_id, e) from e

        changed = True
        logger.debug(
            "Applied migration",
            extra={"document_id": handle.document_id, "version": target},
        )

    return changed


@dataclass(frozen=True)
class DocumentSchema:
    """Declaration of a singleton document.

    Attributes:
        migrations: Version -> migration function

    Example:
        >>> def defaults(settings):
        ...     settings["theme"] = "dark"
        ...     settings["locale"] = "en"
        >>> settings = DocumentSchema(migrations={1: defaults})
    """

    migrations: Migrations = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_migrations(self.migrations)


class Document:
    """Typed access to one versioned repository document.

    The handle is resolved lazily on first use through ``resolver``; the
    bootstrap (create-or-attach plus migration) therefore runs once, the
    first time the document is touched.

    Example:
        >>> settings = db.documents["settings"]
        >>> await settings.change(lambda doc: doc.update(theme="light"))
        >>> (await settings.get())["theme"]
        'light'
    """

    def __init__(
        self,
        repo: DocumentRepo,
        resolver: Callable[[], Awaitable[DocHandle]],
    ) -> None:
        self.repo = repo
        self._resolver = resolver
        self._handle: DocHandle | None = None
        self._lock = asyncio.Lock()

    async def handle(self) -> DocHandle:
        """Resolve (once) and return the underlying document handle."""
        if self._handle is None:
            async with self._lock:
                if self._handle is None:
                    self._handle = await self._resolver()
        return self._handle

    async def id(self) -> DocumentId:
        return (await self.handle()).document_id

    async def get(self) -> dict[str, Any]:
        """Snapshot of the current document value."""
        return (await self.handle()).doc()

    async def change(self, fn: ChangeFn) -> None:
        """Mutate the document in place."""
        (await self.handle()).change(fn)

    async def flush(self) -> None:
        """Durability barrier for this document."""
        await self.repo.flush([await self.id()])

    async def subscribe(self, callback: DocumentSubscriber) -> Unsubscribe:
        """Call ``callback`` with the current value now and after every change.

        Returns:
            Callable that stops further notifications
        """
        handle = await self.handle()
        unsubscribe = handle.on_change(lambda payload: callback(payload.doc))
        callback(handle.doc())
        return unsubscribe


async def init_or_create_document(
    repo: DocumentRepo,
    migrations: Migrations,
    document_id: DocumentId | None = None,
) -> DocHandle:
    """Attach to an existing document or create a new one, then migrate it.

    Args:
        repo: Document repository
        migrations: Migrations to bring the document up to date
        document_id: Existing document id, or None to create

    Returns:
        The migrated document handle (flushed if anything changed)

    Raises:
        ResolutionError: If ``document_id`` cannot be resolved
    """
    if document_id is not None:
        try:
            handle = await repo.find(document_id)
        except RepoError as e:
            raise ResolutionError(
                f"Document '{document_id}' cannot be resolved: {e}", document_id=document_id
            ) from e
        if migrate(handle, migrations):
            await repo.flush([handle.document_id])
        return handle

    handle = repo.create({"_mvid": UNMIGRATED})
    migrate(handle, migrations)
    await repo.flush([handle.document_id])
    logger.info("Created document", extra={"document_id": handle.document_id})
    return handle
