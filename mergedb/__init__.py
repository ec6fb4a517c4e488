"""
MergeDB - schema-versioned, indexed collections on a mergeable-document store.

This package implements a collection engine on top of a CRDT-style document
repository that provides per-document mutation, change patches and a flush
barrier, but no cross-document transactions:
- Versioned documents with ordered, run-once migrations
- Collections of row documents with secondary index documents
- Re-indexing when index declarations change
- Row change events derived from collection document patches
- A root database document linking named documents and collections

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │  Application │────▶│   Database   │────▶│    Collection    │
    │    code      │     │  (root doc)  │     │ (byId + indexes) │
    └──────────────┘     └──────────────┘     └────────┬─────────┘
                                                       │
                         ┌─────────────────────────────┼──────────────┐
                         ▼                             ▼              ▼
                   ┌───────────┐                ┌────────────┐  ┌───────────┐
                   │ Row docs  │                │ Index docs │  │  Change   │
                   │ (_mvid)   │                │ key -> ids │  │ Translator│
                   └─────┬─────┘                └─────┬──────┘  └───────────┘
                         └──────────────┬─────────────┘
                                        ▼
                             ┌─────────────────────┐
                             │ Document repository │
                             │ (merge + persist)   │
                             └─────────────────────┘

Invariants:
    - The repository owns merging and persistence
    - Every write ends with a flush over the documents it touched
    - Migration versions only move forward
    - Index membership follows row values, rows with null key fields are
      left out of that index

How to change safely:
    - Never change index key serialization or stored document shapes
      without a migration
    - Repository backends must implement mergedb.repo.DocumentRepo
"""

from ._version import __version__
from .changes import RowCreated, RowDeleted, RowUpdated, Subscription
from .collection import Collection, CollectionSchema
from .config import DatabaseConfig, MergeDbConfig, ObservabilityConfig, RepoBackend, RepoConfig
from .database import Database
from .document import Document, DocumentSchema, migrate
from .errors import (
    AggregateQueryError,
    MergeDbError,
    MigrationError,
    ResolutionError,
    RowValidationError,
    SchemaDeclarationError,
    UnavailableError,
)
from .query import QueryResult, RowResult
from .repo import InMemoryKeyValueStore, InMemoryRepo, SqliteStorage, create_repo

__all__ = [
    "__version__",
    # Composition
    "Database",
    "Document",
    "DocumentSchema",
    "Collection",
    "CollectionSchema",
    "migrate",
    # Results and events
    "RowResult",
    "QueryResult",
    "RowCreated",
    "RowUpdated",
    "RowDeleted",
    "Subscription",
    # Errors
    "MergeDbError",
    "ResolutionError",
    "UnavailableError",
    "MigrationError",
    "AggregateQueryError",
    "RowValidationError",
    "SchemaDeclarationError",
    # Configuration
    "MergeDbConfig",
    "RepoConfig",
    "RepoBackend",
    "DatabaseConfig",
    "ObservabilityConfig",
    # Repository
    "create_repo",
    "InMemoryRepo",
    "InMemoryKeyValueStore",
    "SqliteStorage",
]
