"""
Document repository abstraction for MergeDB.

The collection engine talks to a mergeable-document repository through the
DocumentRepo protocol. This package provides:
- The protocol, patch/payload types and repository errors
- InMemoryRepo (tests, local development, single-process persistence)
- SqliteStorage (storage adapter + key-value store for InMemoryRepo)

Invariants:
    - Mutations are atomic per document and visible immediately
    - flush() is the only durability barrier

How to change safely:
    - New backends must implement the DocumentRepo protocol
    - Verify change patches match the put/del path conventions
"""

from .base import (
    ChangePayload,
    DocHandle,
    DocumentDeletedError,
    DocumentId,
    DocumentNotFoundError,
    DocumentRepo,
    KeyValueStore,
    Patch,
    RepoClosedError,
    RepoError,
    StorageAdapter,
    StorageError,
    create_repo,
)
from .memory import InMemoryDocHandle, InMemoryKeyValueStore, InMemoryRepo, diff_documents
from .sqlite import SqliteStorage

__all__ = [
    # Protocols and types
    "DocumentRepo",
    "DocHandle",
    "KeyValueStore",
    "StorageAdapter",
    "DocumentId",
    "Patch",
    "ChangePayload",
    "RepoError",
    "DocumentNotFoundError",
    "DocumentDeletedError",
    "RepoClosedError",
    "StorageError",
    # Factory
    "create_repo",
    # Implementations
    "InMemoryRepo",
    "InMemoryDocHandle",
    "InMemoryKeyValueStore",
    "SqliteStorage",
    "diff_documents",
]
