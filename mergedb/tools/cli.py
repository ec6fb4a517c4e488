"""
Inspection CLI for SQLite-persisted MergeDB databases.

Commands:
- collections: List collections with row counts and index descriptors
- rows: Print the rows of one collection as JSON lines
- verify: Check a collection's index documents against its rows

Usage:
    mergedb-inspect --path app.sqlite3 collections
    mergedb-inspect --path app.sqlite3 rows posts
    mergedb-inspect --path app.sqlite3 verify posts

Invariants:
    - Never flushes: documents are only read, and migrations applied while
      reading stay in memory
    - verify exits non-zero when any inconsistency is found

How to change safely:
    - Add new commands, don't change the output of existing ones
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import json_log_formatter

from ..collection import Collection, CollectionSchema
from ..config import DatabaseConfig, MergeDbConfig, ObservabilityConfig
from ..index import IndexDescriptor
from ..repo import DocHandle, InMemoryRepo, RepoError, SqliteStorage

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_NOT_FOUND = 2


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure root logging from configuration.

    Args:
        config: Observability configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class InspectCLI:
    """Read-only views over a persisted database.

    Example:
        >>> cli = InspectCLI(InMemoryRepo(storage=SqliteStorage("app.sqlite3")))
        >>> await cli.collections(root_id)
    """

    def __init__(self, repo: InMemoryRepo, config: DatabaseConfig | None = None) -> None:
        self.repo = repo
        self.config = config or DatabaseConfig()

    async def root_id(self, explicit: str | None = None) -> str | None:
        if explicit:
            return explicit
        if isinstance(self.repo.storage, SqliteStorage):
            return await self.repo.storage.get(self.config.root_id_key)
        return None

    async def collections(self, root_id: str) -> list[dict[str, Any]]:
        """Summaries of every collection linked under the root."""
        root = (await self.repo.find(root_id)).doc()
        summaries = []
        for name, document_id in root.get("collections", {}).items():
            collection = (await self.repo.find(document_id)).doc()
            summaries.append(
                {
                    "name": name,
                    "document_id": document_id,
                    "rows": len(collection.get("byId", {})),
                    "indexes": {
                        index_name: IndexDescriptor.from_dict(value).to_dict()
                        for index_name, value in collection.get("indexes", {}).items()
                    },
                }
            )
        return summaries

    async def _collection_handle(self, root_id: str, name: str) -> DocHandle | None:
        root = (await self.repo.find(root_id)).doc()
        document_id = root.get("collections", {}).get(name)
        if document_id is None:
            return None
        return await self.repo.find(document_id)

    async def rows(self, root_id: str, name: str) -> list[dict[str, Any]] | None:
        """Every resolvable row of a collection, with its id."""
        handle = await self._collection_handle(root_id, name)
        if handle is None:
            return None
        rows = []
        for row_id in handle.doc().get("byId", {}):
            try:
                row = (await self.repo.find(row_id)).doc()
            except RepoError as e:
                logger.warning("Row cannot be resolved", extra={"row_id": row_id, "error": str(e)})
                continue
            rows.append({"id": row_id, **row})
        return rows

    async def verify(self, root_id: str, name: str) -> list[str] | None:
        """Index consistency issues of a collection, None if it does not exist."""
        handle = await self._collection_handle(root_id, name)
        if handle is None:
            return None

        descriptors = {
            index_name: IndexDescriptor.from_dict(value)
            for index_name, value in handle.doc().get("indexes", {}).items()
        }
        legacy = [index_name for index_name, d in descriptors.items() if d.key is None]
        if legacy:
            return [f"index {index_name}: descriptor has no key definition" for index_name in legacy]

        schema = CollectionSchema(
            indexes={index_name: d.key for index_name, d in descriptors.items()},  # type: ignore[misc]
        )

        async def resolve() -> DocHandle:
            return handle

        collection = Collection(self.repo, name, schema, resolve, config=self.config)
        return await collection.verify_indexes()


async def _run(args: argparse.Namespace, config: MergeDbConfig) -> int:
    storage = SqliteStorage(
        args.path or config.repo.sqlite_path,
        busy_timeout_ms=config.repo.busy_timeout_ms,
        wal_mode=config.repo.wal_mode,
    )
    cli = InspectCLI(InMemoryRepo(storage=storage), config.database)

    root_id = await cli.root_id(args.root)
    if root_id is None:
        print("No database root found", file=sys.stderr)
        return EXIT_NOT_FOUND

    if args.command == "collections":
        print(json.dumps(await cli.collections(root_id), indent=2, sort_keys=True))
        return EXIT_OK

    if args.command == "rows":
        rows = await cli.rows(root_id, args.collection)
        if rows is None:
            print(f"Unknown collection: {args.collection}", file=sys.stderr)
            return EXIT_NOT_FOUND
        for row in rows:
            print(json.dumps(row, sort_keys=True))
        return EXIT_OK

    issues = await cli.verify(root_id, args.collection)
    if issues is None:
        print(f"Unknown collection: {args.collection}", file=sys.stderr)
        return EXIT_NOT_FOUND
    for issue in issues:
        print(issue)
    if issues:
        print(f"{len(issues)} issue(s) found", file=sys.stderr)
        return EXIT_ISSUES
    print("OK")
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="MergeDB inspection tool")
    parser.add_argument("--path", help="SQLite database file (default: MERGEDB_SQLITE_PATH)")
    parser.add_argument("--root", help="Root document id (default: stored root id)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("collections", help="List collections")

    rows_parser = subparsers.add_parser("rows", help="Print collection rows")
    rows_parser.add_argument("collection", help="Collection name")

    verify_parser = subparsers.add_parser("verify", help="Verify collection indexes")
    verify_parser.add_argument("collection", help="Collection name")

    args = parser.parse_args(argv)

    config = MergeDbConfig.from_env()
    setup_logging(config.observability)

    sys.exit(asyncio.run(_run(args, config)))


if __name__ == "__main__":
    main()
