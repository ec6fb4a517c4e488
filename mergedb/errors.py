"""
Error types for MergeDB.

This module defines the exceptions raised by the collection engine:
- MergeDbError: Base exception
- ResolutionError: A document id cannot be resolved by the repository
- UnavailableError: A row id is not (or no longer) usable in its collection
- MigrationError: A migration function raised
- AggregateQueryError: One or more row resolutions failed during a bulk read
- RowValidationError: A row value does not match the declared row model
- SchemaDeclarationError: A document or collection declaration is invalid

Repository-level failures (DocumentNotFoundError and friends) are defined
next to the repository protocol in mergedb.repo.base.

Invariants:
    - All errors inherit from MergeDbError
    - Errors carry a stable code plus structured details
    - Wrapped causes are chained with ``raise ... from``
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Any


class MergeDbError(Exception):
    """Base exception for all MergeDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "MERGEDB_ERROR"
        self.details = details or {}


class ResolutionError(MergeDbError):
    """A referenced row, index or collection document cannot be resolved."""

    def __init__(
        self,
        message: str,
        document_id: str | None = None,
        code: str = "RESOLUTION_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"document_id": document_id})
        self.document_id = document_id


class UnavailableError(ResolutionError):
    """A row id is not registered in its collection, or cannot be resolved.

    Raised when:
    - The id was never part of the collection (or has been deleted from it)
    - The id is registered in ``byId`` but its document cannot be found
    """

    def __init__(self, document_id: str, collection: str, reason: str | None = None) -> None:
        message = f"Row '{document_id}' is unavailable in collection '{collection}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, document_id=document_id, code="UNAVAILABLE")
        self.collection = collection
        self.details["collection"] = collection


class MigrationError(MergeDbError):
    """A migration function raised while upgrading a document.

    Versions applied before the failing one stay committed.
    """

    def __init__(self, version: int, document_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Migration to version {version} failed for document '{document_id}': {cause}",
            code="MIGRATION_ERROR",
            details={"version": version, "document_id": document_id},
        )
        self.version = version
        self.document_id = document_id


class AggregateQueryError(MergeDbError):
    """One or more row resolutions failed during a scan or index lookup.

    Iterating the error yields every wrapped per-row error.
    """

    def __init__(self, errors: Sequence[Exception], message: str | None = None) -> None:
        super().__init__(
            message or "\n".join(str(error) for error in errors),
            code="AGGREGATE_QUERY_ERROR",
            details={"count": len(errors)},
        )
        self.errors = list(errors)

    def __iter__(self) -> Iterator[Exception]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)


class RowValidationError(MergeDbError):
    """A row value does not validate against the collection's row model."""

    def __init__(self, collection: str, errors: list[dict[str, Any]]) -> None:
        super().__init__(
            f"Row failed validation for collection '{collection}': {len(errors)} error(s)",
            code="VALIDATION_ERROR",
            details={"collection": collection, "errors": errors},
        )
        self.collection = collection
        self.errors = errors


class SchemaDeclarationError(MergeDbError):
    """A document or collection declaration is invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SCHEMA_ERROR")
