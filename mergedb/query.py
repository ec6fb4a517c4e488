"""
Query options and results for collection reads.

Bulk reads (Collection.find and Collection.find_by_index) share one
pipeline:

    candidate ids -> [page slice] -> resolve -> filter -> sort -> [page slice]

The page is sliced before resolution only when neither a filter nor a sort
could change which rows land on the page; otherwise every candidate is
resolved and the page is cut from the filtered, sorted list.

Pagination is page based: ``offset`` counts pages of ``limit`` rows, so a
page covers ``[offset * limit, offset * limit + limit)``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, TypeVar

from .errors import AggregateQueryError
from .repo.base import DocumentId

RowFilter = Callable[[dict[str, Any]], bool]
RowComparator = Callable[[dict[str, Any], dict[str, Any]], int]

T = TypeVar("T")


@dataclass(frozen=True)
class RowResult:
    """A resolved row.

    Unpacks as ``row_id, row = result``.
    """

    id: DocumentId
    row: dict[str, Any]

    def __iter__(self) -> Iterator[Any]:
        return iter((self.id, self.row))


@dataclass(frozen=True)
class FindOptions:
    """Filter, ordering and pagination for a bulk read.

    Attributes:
        filter: Keep rows for which this returns True
        sort: Comparator returning <0, 0 or >0, as for cmp_to_key
        limit: Page size, None for no pagination
        offset: Page number, starting at 0
    """

    filter: RowFilter | None = None
    sort: RowComparator | None = None
    limit: int | None = None
    offset: int = 0

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise ValueError(f"limit must be non-negative, got {self.limit}")
        if self.offset < 0:
            raise ValueError(f"offset must be non-negative, got {self.offset}")

    @property
    def page_bounds(self) -> tuple[int, int] | None:
        if self.limit is None:
            return None
        start = self.offset * self.limit
        return start, start + self.limit

    @property
    def slices_before_resolution(self) -> bool:
        return self.filter is None and self.sort is None and self.limit is not None

    def select_ids(self, ids: Sequence[T]) -> list[T]:
        """Candidate ids worth resolving."""
        if self.slices_before_resolution:
            start, end = self.page_bounds  # type: ignore[misc]
            return list(ids[start:end])
        return list(ids)

    def finish(self, rows: list[RowResult]) -> list[RowResult]:
        """Apply filter, sort and page slicing to resolved rows."""
        if self.filter is not None:
            rows = [result for result in rows if self.filter(result.row)]
        if self.slices_before_resolution:
            return rows
        if self.sort is not None:
            sort = self.sort
            rows = sorted(rows, key=cmp_to_key(lambda a, b: sort(a.row, b.row)))
        bounds = self.page_bounds
        if bounds is not None:
            rows = rows[bounds[0]:bounds[1]]
        return rows


@dataclass(frozen=True)
class QueryResult:
    """Either the rows of a bulk read or the error that superseded them.

    Unpacks as ``rows, error = result``; exactly one of the two is None.

    Example:
        >>> rows, error = await posts.find(limit=10)
        >>> if error:
        ...     for cause in error:
        ...         print(cause)
    """

    rows: list[RowResult] | None = None
    error: AggregateQueryError | None = None

    @classmethod
    def success(cls, rows: list[RowResult]) -> QueryResult:
        return cls(rows=rows)

    @classmethod
    def failure(cls, error: AggregateQueryError) -> QueryResult:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> list[RowResult]:
        """Return the rows, raising the aggregate error on failure."""
        if self.error is not None:
            raise self.error
        return self.rows or []

    def __iter__(self) -> Iterator[Any]:
        return iter((self.rows, self.error))
