"""
Secondary index documents and composite key serialization.

An index document maps a serialized key to the set of row ids sharing it:

    {
        '"hello"|3': {"<row id>": true, "<row id>": true},
        '"world"|1': {"<row id>": true},
    }

Key serialization (compatible with documents written by other clients):
    - tuple of N field values: JSON(v0) + "|" + JSON(v1) + ... + JSON(vN-1)
    - single field: JSON(v0), no separator
    - JSON text follows ECMAScript JSON.stringify: compact separators, no
      ASCII escaping, numbers formatted by Number.prototype.toString
      (integral values without a fraction, exponents only below 1e-6
      or from 1e21 on)

Invariants:
    - A row is indexed under exactly one bucket per index
    - A row with any missing or null key field is absent from the whole
      index (partial index), it is never an error
    - Empty buckets are removed

How to change safely:
    - Never change the serialization, stored buckets would stop matching
    - Index key changes are handled by re-indexing into a new document
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Union

from .repo.base import DocumentId

KEY_SEPARATOR = "|"

IndexKey = Union[str, tuple[str, ...]]

# Number.prototype.toString uses plain notation for decimal exponents in (-6, 21]
_PLAIN_MAX_EXPONENT = 21
_PLAIN_MIN_EXPONENT = -6


def normalize_key(key: IndexKey | list[str]) -> tuple[str, ...]:
    """Return an index key as a tuple of field names."""
    if isinstance(key, str):
        return (key,)
    return tuple(key)


def _js_number(value: int | float) -> str:
    """Format a number the way ECMAScript Number.prototype.toString does."""
    if isinstance(value, float) and not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"
    if isinstance(value, int) and abs(value) < 10**_PLAIN_MAX_EXPONENT:
        return str(value)

    # repr() yields the shortest round-tripping digits, like JS
    _, digit_tuple, exponent = Decimal(repr(abs(float(value)))).as_tuple()
    raw = "".join(str(d) for d in digit_tuple)
    digits = raw.rstrip("0")
    exponent += len(raw) - len(digits)
    k = len(digits)
    n = exponent + k

    if k <= n <= _PLAIN_MAX_EXPONENT:
        body = digits + "0" * (n - k)
    elif 0 < n <= _PLAIN_MAX_EXPONENT:
        body = f"{digits[:n]}.{digits[n:]}"
    elif _PLAIN_MIN_EXPONENT < n <= 0:
        body = "0." + "0" * -n + digits
    else:
        e = n - 1
        mantissa = digits if k == 1 else f"{digits[0]}.{digits[1:]}"
        body = f"{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"

    return ("-" if value < 0 else "") + body


def to_json(value: Any) -> str:
    """Encode a JSON value the way JSON.stringify does.

    Raises:
        TypeError: If the value is not JSON-compatible
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _js_number(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(to_json(item) for item in value) + "]"
    if isinstance(value, dict):
        members = (f"{to_json(str(k))}:{to_json(v)}" for k, v in value.items())
        return "{" + ",".join(members) + "}"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_values(values: Any) -> str:
    """Serialize lookup values into an index bucket key.

    A non-empty list or tuple is treated as a composite key; anything else
    is a single value.
    """
    if isinstance(values, (list, tuple)) and len(values) > 0:
        return KEY_SEPARATOR.join(to_json(value) for value in values)
    return to_json(values)


def index_key_for_row(row: Mapping[str, Any], key: IndexKey) -> str | None:
    """Serialized bucket key of a row for one index.

    Returns:
        The bucket key, or None if any key field is missing or null
    """
    parts = []
    for field_name in normalize_key(key):
        value = row.get(field_name)
        if value is None:
            return None
        parts.append(to_json(value))
    return KEY_SEPARATOR.join(parts)


def index_keys_for_row(
    row: Mapping[str, Any],
    indexes: Mapping[str, IndexKey],
) -> dict[str, str]:
    """Bucket keys of a row for every index it participates in."""
    keys = {}
    for name, key in indexes.items():
        bucket = index_key_for_row(row, key)
        if bucket is not None:
            keys[name] = bucket
    return keys


@dataclass
class IndexDiff:
    """Index membership changes of one row.

    Attributes:
        added: index name -> bucket the row must be added to
        removed: index name -> bucket the row must be removed from
    """

    added: dict[str, str] = field(default_factory=dict)
    removed: dict[str, str] = field(default_factory=dict)

    @property
    def index_names(self) -> list[str]:
        return list(dict.fromkeys([*self.removed, *self.added]))

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


def diff_index_keys(previous: Mapping[str, str], current: Mapping[str, str]) -> IndexDiff:
    """Compare a row's bucket keys before and after a change."""
    diff = IndexDiff()
    for name in dict.fromkeys([*previous, *current]):
        before = previous.get(name)
        after = current.get(name)
        if before == after:
            continue
        if before is not None:
            diff.removed[name] = before
        if after is not None:
            diff.added[name] = after
    return diff


def add_to_bucket(index_doc: dict[str, Any], bucket: str, row_id: DocumentId) -> None:
    index_doc.setdefault(bucket, {})[row_id] = True


def remove_from_bucket(index_doc: dict[str, Any], bucket: str, row_id: DocumentId) -> None:
    row_ids = index_doc.get(bucket)
    if not row_ids:
        return
    row_ids.pop(row_id, None)
    if not row_ids:
        del index_doc[bucket]


@dataclass(frozen=True)
class IndexDescriptor:
    """Stored description of one index in the collection document.

    Attributes:
        key: Field names making up the key, None for descriptors written
            without a key (legacy, always re-indexed)
        index_document_id: Id of the index document
    """

    key: tuple[str, ...] | None
    index_document_id: DocumentId

    def to_dict(self) -> dict[str, Any]:
        key: Any = None
        if self.key is not None:
            key = self.key[0] if len(self.key) == 1 else list(self.key)
        return {"key": key, "indexDocumentId": self.index_document_id}

    @classmethod
    def from_dict(cls, data: Any) -> IndexDescriptor:
        if isinstance(data, str):
            return cls(key=None, index_document_id=data)
        key = data.get("key")
        return cls(
            key=normalize_key(key) if key is not None else None,
            index_document_id=data["indexDocumentId"],
        )


@dataclass
class ReindexPlan:
    """Index changes between stored descriptors and current declarations.

    Attributes:
        new: Declared names with no stored descriptor
        changed: Names whose stored key differs from the declared one
        removed: Stored names no longer declared
    """

    new: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def to_build(self) -> list[str]:
        return [*self.new, *self.changed]

    def __bool__(self) -> bool:
        return bool(self.new or self.changed or self.removed)


def plan_reindex(
    declared: Mapping[str, IndexKey],
    stored: Mapping[str, IndexDescriptor],
) -> ReindexPlan:
    """Work out which indexes must be built or discarded on attach."""
    plan = ReindexPlan()
    for name, key in declared.items():
        descriptor = stored.get(name)
        if descriptor is None:
            plan.new.append(name)
        elif descriptor.key != normalize_key(key):
            plan.changed.append(name)
    plan.removed = [name for name in stored if name not in declared]
    return plan
