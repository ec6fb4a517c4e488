"""
Change translation: collection document patches to row events.

Subscribers of a collection receive three kinds of events:
- RowCreated: a row id appeared in ``byId`` with the creation marker 0
- RowUpdated: a row id's ``byId`` marker was touched
- RowDeleted: a row id was removed from ``byId``

Created and updated events carry the row snapshot, resolved when the event
is delivered. Deleted events carry only the id because the row document is
usually gone by then.

Invariants:
    - Events are delivered in patch order for one collection document
    - Patches outside ``byId/<id>`` are ignored
    - One worker task per subscription; callbacks never run concurrently
      with each other for the same subscription

How to change safely:
    - Keep the creation marker (0) in sync with Collection.create
    - Never block inside the patch listener, it runs inside change()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Literal, Union

from .errors import ResolutionError
from .repo.base import ChangePayload, DocHandle, DocumentId, Patch

logger = logging.getLogger(__name__)

BY_ID = "byId"
CREATED_MARKER = 0


@dataclass(frozen=True)
class RowCreated:
    id: DocumentId
    row: dict[str, Any]


@dataclass(frozen=True)
class RowUpdated:
    id: DocumentId
    row: dict[str, Any]


@dataclass(frozen=True)
class RowDeleted:
    id: DocumentId


ChangeEvent = Union[RowCreated, RowUpdated, RowDeleted]
ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
RowResolver = Callable[[DocumentId], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class PendingChange:
    """A row change waiting for snapshot resolution."""

    kind: Literal["created", "updated", "deleted"]
    row_id: DocumentId


def _is_created_marker(value: Any) -> bool:
    return not isinstance(value, bool) and value == CREATED_MARKER


def translate_patches(patches: Iterable[Patch]) -> Iterator[PendingChange]:
    """Map collection document patches to pending row changes."""
    for patch in patches:
        path = patch.path
        if not path or path[0] != BY_ID:
            continue

        if len(path) == 1:
            # The whole map was replaced
            if patch.action == "put" and isinstance(patch.value, dict):
                for row_id, marker in patch.value.items():
                    kind = "created" if _is_created_marker(marker) else "updated"
                    yield PendingChange(kind, row_id)
            continue

        if len(path) != 2:
            continue

        row_id = path[1]
        if patch.action == "del":
            yield PendingChange("deleted", row_id)
        elif _is_created_marker(patch.value):
            yield PendingChange("created", row_id)
        else:
            yield PendingChange("updated", row_id)


class ChangeTranslator:
    """Turns a collection document's patch stream into row events.

    The patch listener only enqueues; a single worker task resolves row
    snapshots and invokes the callback, so delivery order matches patch
    order even though resolution is asynchronous.

    Example:
        >>> translator = ChangeTranslator(collection_handle, resolve_row, print)
        >>> ...
        >>> translator.close()

    Use ``await translator.aclose()`` to also wait for the worker to stop.
    """

    def __init__(
        self,
        handle: DocHandle,
        resolve_row: RowResolver,
        callback: ChangeCallback,
        collection: str = "",
    ) -> None:
        self.collection = collection
        self._resolve_row = resolve_row
        self._callback = callback
        self._queue: asyncio.Queue[PendingChange] = asyncio.Queue()
        self._closed = False
        self._delivered = 0
        self._unsubscribe = handle.on_change(self._on_change)
        self._worker = asyncio.create_task(self._run())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running(self) -> bool:
        """Whether the delivery worker task is still alive."""
        return not self._worker.done()

    @property
    def delivered_count(self) -> int:
        return self._delivered

    def _on_change(self, payload: ChangePayload) -> None:
        if self._closed:
            return
        for change in translate_patches(payload.patches):
            self._queue.put_nowait(change)

    async def _run(self) -> None:
        while True:
            change = await self._queue.get()
            try:
                event = await self._to_event(change)
                if event is not None:
                    await self._deliver(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Failed to translate row change: {e}",
                    exc_info=True,
                    extra={"collection": self.collection, "row_id": change.row_id},
                )
            finally:
                self._queue.task_done()

    async def _to_event(self, change: PendingChange) -> ChangeEvent | None:
        if change.kind == "deleted":
            return RowDeleted(change.row_id)

        try:
            row = await self._resolve_row(change.row_id)
        except ResolutionError as e:
            logger.warning(
                "Skipping row event, row no longer resolves",
                extra={
                    "collection": self.collection,
                    "row_id": change.row_id,
                    "kind": change.kind,
                    "error": str(e),
                },
            )
            return None

        if change.kind == "created":
            return RowCreated(change.row_id, row)
        return RowUpdated(change.row_id, row)

    async def _deliver(self, event: ChangeEvent) -> None:
        try:
            result = self._callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"Change subscriber failed: {e}",
                exc_info=True,
                extra={"collection": self.collection, "row_id": event.id},
            )
            return
        self._delivered += 1

    async def drain(self) -> None:
        """Wait until every queued change has been delivered."""
        if self._closed:
            return
        await self._queue.join()

    def close(self) -> None:
        """Stop listening and cancel the worker."""
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._worker.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def aclose(self) -> None:
        """Close and wait for the worker task to finish."""
        self.close()
        if self._worker is asyncio.current_task():
            return
        try:
            await self._worker
        except asyncio.CancelledError:
            pass


class Subscription:
    """Handle returned by Collection.subscribe().

    Calling it (or ``unsubscribe()``) stops event delivery.
    """

    def __init__(self, translator: ChangeTranslator) -> None:
        self._translator = translator

    @property
    def active(self) -> bool:
        return not self._translator.closed

    def unsubscribe(self) -> None:
        self._translator.close()

    def __call__(self) -> None:
        self.unsubscribe()

    async def drain(self) -> None:
        """Wait until events for all changes made so far are delivered."""
        await self._translator.drain()

    async def aclose(self) -> None:
        """Unsubscribe and wait until the delivery worker has stopped."""
        await self._translator.aclose()
