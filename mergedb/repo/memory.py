"""
In-memory document repository.

This module provides the repository backend used for:
- Unit and integration tests
- Local development
- Persistent single-process use, when a storage adapter is attached

Documents are plain JSON-compatible dicts. Mutations run against a deep
copy which is swapped in only when the mutation function returns, so a
raising function leaves the document untouched. Structural patches are
derived by diffing the old and new values.

Invariants:
    - Listeners observe changes synchronously, in mutation order
    - Lists are treated as atomic values (replaced, never spliced)
    - Without a storage adapter, all data is lost on process exit
    - flush() persists only documents that changed since their last flush

How to change safely:
    - Keep interface compatible with the DocumentRepo protocol
    - Add testing helpers at the bottom of InMemoryRepo
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Iterable
from typing import Any
import logging

from .base import (
    ChangeFn,
    ChangeListener,
    ChangePayload,
    DocumentDeletedError,
    DocumentId,
    DocumentNotFoundError,
    Patch,
    RepoClosedError,
    StorageAdapter,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


def _same(left: Any, right: Any) -> bool:
    # bool is an int subclass; True must not compare equal to 1 here
    return type(left) is type(right) and left == right


def diff_documents(
    before: dict[str, Any],
    after: dict[str, Any],
    path: tuple[str, ...] = (),
) -> list[Patch]:
    """Compute the structural patches turning ``before`` into ``after``.

    Args:
        before: Previous document value
        after: New document value
        path: Path prefix of the compared maps

    Returns:
        Patches in deterministic order: deletions first, then puts in the
        key order of ``after``
    """
    patches: list[Patch] = []

    for key in before:
        if key not in after:
            patches.append(Patch("del", path + (key,)))

    for key, value in after.items():
        if key not in before:
            patches.append(Patch("put", path + (key,), copy.deepcopy(value)))
            continue
        previous = before[key]
        if isinstance(previous, dict) and isinstance(value, dict):
            patches.extend(diff_documents(previous, value, path + (key,)))
        elif not _same(previous, value):
            patches.append(Patch("put", path + (key,), copy.deepcopy(value)))

    return patches


class InMemoryDocHandle:
    """Handle to a document held by InMemoryRepo."""

    def __init__(self, repo: InMemoryRepo, document_id: DocumentId, value: dict[str, Any]) -> None:
        self._repo = repo
        self._document_id = document_id
        self._value = value
        self._listeners: list[ChangeListener] = []
        self._deleted = False

    @property
    def document_id(self) -> DocumentId:
        return self._document_id

    @property
    def is_deleted(self) -> bool:
        return self._deleted

    def doc(self) -> dict[str, Any]:
        if self._deleted:
            raise DocumentDeletedError(self._document_id)
        return copy.deepcopy(self._value)

    def change(self, fn: ChangeFn) -> None:
        if self._deleted:
            raise DocumentDeletedError(self._document_id)

        draft = copy.deepcopy(self._value)
        fn(draft)
        patches = diff_documents(self._value, draft)
        self._value = draft

        if not patches:
            return

        self._repo._mark_dirty(self._document_id)
        logger.debug(
            "Document changed",
            extra={"document_id": self._document_id, "patches": len(patches)},
        )

        payload = ChangePayload(
            document_id=self._document_id,
            patches=patches,
            doc=copy.deepcopy(draft),
        )
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.error(
                    f"Change listener failed: {e}",
                    exc_info=True,
                    extra={"document_id": self._document_id},
                )

    def on_change(self, listener: ChangeListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def delete(self) -> None:
        if self._deleted:
            return
        self._deleted = True
        self._listeners.clear()
        self._repo._forget(self._document_id)

    def __repr__(self) -> str:
        return f"InMemoryDocHandle({self._document_id!r})"


class InMemoryRepo:
    """In-memory implementation of DocumentRepo.

    Attributes:
        storage: Optional storage adapter written by flush() and read by
            find() for documents not yet loaded
        flush_calls: Every flush() request as a list of ids (testing aid)

    Thread safety:
        Designed for a single event loop. flush() is serialized with an
        asyncio lock; mutations are synchronous.

    Example:
        >>> repo = InMemoryRepo()
        >>> handle = repo.create({"_mvid": -1})
        >>> found = await repo.find(handle.document_id)
        >>> found is handle
        True
    """

    def __init__(self, storage: StorageAdapter | None = None) -> None:
        """Initialize the repository.

        Args:
            storage: Optional persistence backend
        """
        self.storage = storage
        self.flush_calls: list[list[DocumentId]] = []
        self._handles: dict[DocumentId, InMemoryDocHandle] = {}
        self._deleted: set[DocumentId] = set()
        self._dirty: set[DocumentId] = set()
        self._pending_removals: set[DocumentId] = set()
        self._failing_finds: set[DocumentId] = set()
        self._closed = False
        self._lock = asyncio.Lock()

    def create(self, initial_value: dict[str, Any] | None = None) -> InMemoryDocHandle:
        self._check_open()
        document_id = uuid.uuid4().hex
        handle = InMemoryDocHandle(self, document_id, copy.deepcopy(initial_value or {}))
        self._handles[document_id] = handle
        self._dirty.add(document_id)
        logger.debug("Document created", extra={"document_id": document_id})
        return handle

    async def find(self, document_id: DocumentId) -> InMemoryDocHandle:
        self._check_open()

        if document_id in self._failing_finds:
            self._failing_finds.discard(document_id)
            raise DocumentNotFoundError(document_id)
        if document_id in self._deleted:
            raise DocumentDeletedError(document_id)

        handle = self._handles.get(document_id)
        if handle is not None:
            return handle

        if self.storage is not None:
            value = await self.storage.load(document_id)
            if value is not None:
                # Another find() may have loaded it while we awaited storage
                handle = self._handles.get(document_id)
                if handle is None:
                    handle = InMemoryDocHandle(self, document_id, value)
                    self._handles[document_id] = handle
                return handle

        raise DocumentNotFoundError(document_id)

    async def delete(self, document_id: DocumentId) -> None:
        handle = await self.find(document_id)
        handle.delete()

    async def flush(self, document_ids: Iterable[DocumentId] | None = None) -> None:
        self._check_open()

        async with self._lock:
            if document_ids is None:
                ids = list(self._dirty | self._pending_removals)
            else:
                ids = list(dict.fromkeys(document_ids))
            self.flush_calls.append(ids)

            if self.storage is None:
                self._dirty.difference_update(ids)
                self._pending_removals.difference_update(ids)
                return

            for document_id in ids:
                if document_id in self._pending_removals:
                    await self.storage.remove(document_id)
                    self._pending_removals.discard(document_id)
                elif document_id in self._dirty:
                    handle = self._handles.get(document_id)
                    if handle is not None:
                        await self.storage.save(document_id, handle.doc())
                    self._dirty.discard(document_id)

        logger.debug("Flushed documents", extra={"count": len(ids)})

    async def close(self) -> None:
        """Flush everything pending and refuse further operations."""
        if self._closed:
            return
        await self.flush()
        self._closed = True
        self._handles.clear()
        logger.debug("InMemoryRepo closed")

    def _check_open(self) -> None:
        if self._closed:
            raise RepoClosedError("Repository is closed")

    def _mark_dirty(self, document_id: DocumentId) -> None:
        self._dirty.add(document_id)

    def _forget(self, document_id: DocumentId) -> None:
        self._handles.pop(document_id, None)
        self._dirty.discard(document_id)
        self._deleted.add(document_id)
        self._pending_removals.add(document_id)
        logger.debug("Document deleted", extra={"document_id": document_id})

    # Testing helpers

    def document_count(self) -> int:
        """Number of live documents held in memory."""
        return len(self._handles)

    def contains(self, document_id: DocumentId) -> bool:
        """Whether a live document with this id is held in memory."""
        return document_id in self._handles

    def fail_next_find(self, document_id: DocumentId) -> None:
        """Make the next find() for this id raise DocumentNotFoundError."""
        self._failing_finds.add(document_id)

    def drop(self, document_id: DocumentId) -> None:
        """Lose a document without deleting it, as if it were unreachable."""
        self._handles.pop(document_id, None)
        self._dirty.discard(document_id)


class InMemoryKeyValueStore:
    """Dict-backed KeyValueStore."""

    def __init__(self, values: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(values or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value
