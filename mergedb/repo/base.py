"""
Base protocol and types for the document repository boundary.

The repository is the external mergeable-document store the collection
engine is built on. It owns convergence of concurrent edits and
persistence; the engine only relies on the capabilities defined here:
- create/find/delete of documents by id
- an in-place, synchronous-in-effect mutation function per document
- a change-notification stream of structural patches
- a best-effort durability barrier (flush)

Invariants:
    - DocHandle.change() is atomic: if the mutation function raises,
      nothing is applied and no patches are emitted
    - The effect of change() is visible to the next doc() call on the
      same handle, before any flush
    - Patches are delivered in mutation order per document
    - flush() returns only after the backend persisted the listed ids

How to change safely:
    - Protocol changes require updating all implementations
    - Add new capabilities as optional, never widen existing signatures
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable
import logging

if TYPE_CHECKING:
    from ..config import RepoConfig

logger = logging.getLogger(__name__)

DocumentId = str


class RepoError(Exception):
    """Base exception for repository operations."""
    pass


class DocumentNotFoundError(RepoError):
    """The document id was never seen or is unreachable."""

    def __init__(self, document_id: DocumentId) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class DocumentDeletedError(RepoError):
    """The document has been deleted from the repository."""

    def __init__(self, document_id: DocumentId) -> None:
        super().__init__(f"Document has been deleted: {document_id}")
        self.document_id = document_id


class RepoClosedError(RepoError):
    """The repository has been closed."""
    pass


class StorageError(RepoError):
    """The storage adapter failed to persist or load a document."""
    pass


@dataclass(frozen=True)
class Patch:
    """A single structural change to a document.

    Attributes:
        action: "put" when a value was set, "del" when a key was removed
        path: Keys from the document root to the changed value
        value: The new value (only for "put")
    """
    action: Literal["put", "del"]
    path: tuple[str, ...]
    value: Any = None

    def __str__(self) -> str:
        return f"{self.action} /{'/'.join(self.path)}"


@dataclass
class ChangePayload:
    """One mutation batch delivered to change listeners.

    Attributes:
        document_id: Document that changed
        patches: Structural patches in application order
        doc: Snapshot of the document after the change
    """
    document_id: DocumentId
    patches: list[Patch] = field(default_factory=list)
    doc: dict[str, Any] = field(default_factory=dict)


ChangeFn = Callable[[dict[str, Any]], None]
ChangeListener = Callable[[ChangePayload], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class DocHandle(Protocol):
    """Handle to a single repository document."""

    @property
    @abstractmethod
    def document_id(self) -> DocumentId:
        """Opaque, immutable document id."""
        ...

    @property
    @abstractmethod
    def is_deleted(self) -> bool:
        """Whether the document has been deleted."""
        ...

    @abstractmethod
    def doc(self) -> dict[str, Any]:
        """Return a detached snapshot of the current merged state."""
        ...

    @abstractmethod
    def change(self, fn: ChangeFn) -> None:
        """Apply fn to a mutable view of the document.

        Raises:
            DocumentDeletedError: If the document was deleted
            Exception: Whatever fn raises; the change is discarded
        """
        ...

    @abstractmethod
    def on_change(self, listener: ChangeListener) -> Unsubscribe:
        """Register a listener for change payloads.

        Returns:
            Callable that removes the listener
        """
        ...

    @abstractmethod
    def delete(self) -> None:
        """Remove the document from the repository."""
        ...


@runtime_checkable
class DocumentRepo(Protocol):
    """Protocol for document repository backends.

    Durability contract:
        - flush() returns after the listed documents are as durable as the
          backend can make them
        - create() and change() effects are immediately visible in memory

    Example:
        >>> repo = InMemoryRepo()
        >>> handle = repo.create({"title": "hello"})
        >>> handle.change(lambda doc: doc.update(title="world"))
        >>> await repo.flush([handle.document_id])
    """

    @abstractmethod
    def create(self, initial_value: dict[str, Any] | None = None) -> DocHandle:
        """Allocate a new document with a fresh id."""
        ...

    @abstractmethod
    async def find(self, document_id: DocumentId) -> DocHandle:
        """Resolve an existing document by id.

        Raises:
            DocumentNotFoundError: If the id is unknown or unreachable
            DocumentDeletedError: If the document was deleted
        """
        ...

    @abstractmethod
    async def delete(self, document_id: DocumentId) -> None:
        """Delete a document by id."""
        ...

    @abstractmethod
    async def flush(self, document_ids: Iterable[DocumentId] | None = None) -> None:
        """Durability barrier for the listed ids (all documents if None)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending writes and release resources."""
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Small key-value store used to anchor the root document id."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...


@runtime_checkable
class StorageAdapter(Protocol):
    """Persistence backend used by the repository's flush()."""

    @abstractmethod
    async def save(self, document_id: DocumentId, value: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def load(self, document_id: DocumentId) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def remove(self, document_id: DocumentId) -> None:
        ...


def create_repo(config: "RepoConfig") -> DocumentRepo:
    """Factory function to create a document repository from configuration.

    Args:
        config: Repository configuration

    Returns:
        Appropriate DocumentRepo implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import RepoBackend
    from .memory import InMemoryRepo
    from .sqlite import SqliteStorage

    if config.backend == RepoBackend.MEMORY:
        return InMemoryRepo()
    elif config.backend == RepoBackend.SQLITE:
        storage = SqliteStorage(
            config.sqlite_path,
            busy_timeout_ms=config.busy_timeout_ms,
            wal_mode=config.wal_mode,
        )
        return InMemoryRepo(storage=storage)
    else:
        raise ValueError(f"Unsupported repository backend: {config.backend}")
