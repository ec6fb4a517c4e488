"""
Configuration management for MergeDB.

Configuration is read from environment variables (prefix ``MERGEDB_``) or
constructed directly in code. Every section is a frozen dataclass with a
``from_env()`` constructor.

Invariants:
    - All settings have sensible defaults for local development
    - The in-memory repository is the default backend
    - Paths are never created at load time, only on first write

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep environment variable names stable
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class RepoBackend(Enum):
    """Supported document repository backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class RepoConfig:
    """Document repository configuration.

    Attributes:
        backend: Which repository backend to use
        sqlite_path: Database file for the SQLite storage adapter
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: Whether to enable SQLite WAL journaling
    """

    backend: RepoBackend = RepoBackend.MEMORY
    sqlite_path: str = "mergedb.sqlite3"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> RepoConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("MERGEDB_REPO_BACKEND", "memory").lower()
        try:
            backend = RepoBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid MERGEDB_REPO_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )
        return cls(
            backend=backend,
            sqlite_path=os.getenv("MERGEDB_SQLITE_PATH", "mergedb.sqlite3"),
            busy_timeout_ms=int(os.getenv("MERGEDB_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=os.getenv("MERGEDB_SQLITE_WAL_MODE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """Database composer and collection engine configuration.

    Attributes:
        root_id_key: Key under which the root document id is kept in an
            injected key-value store
        serialize_writes: Queue writes per collection behind a single writer
    """

    root_id_key: str = "database-document-id"
    serialize_writes: bool = True

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Load configuration from environment variables."""
        return cls(
            root_id_key=os.getenv("MERGEDB_ROOT_ID_KEY", "database-document-id"),
            serialize_writes=os.getenv("MERGEDB_SERIALIZE_WRITES", "true").lower() == "true",
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("MERGEDB_LOG_LEVEL", "INFO"),
            log_format=os.getenv("MERGEDB_LOG_FORMAT", "text"),
        )


@dataclass
class MergeDbConfig:
    """Complete configuration.

    Attributes:
        repo: Repository backend configuration
        database: Database composer configuration
        observability: Logging configuration
    """

    repo: RepoConfig = field(default_factory=RepoConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> MergeDbConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            repo=RepoConfig.from_env(),
            database=DatabaseConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.repo.backend == RepoBackend.SQLITE and not self.repo.sqlite_path:
            raise ValueError("MERGEDB_SQLITE_PATH is required when MERGEDB_REPO_BACKEND=sqlite")
        if self.repo.busy_timeout_ms < 0:
            raise ValueError("MERGEDB_SQLITE_BUSY_TIMEOUT_MS must be non-negative")
        if not self.database.root_id_key:
            raise ValueError("MERGEDB_ROOT_ID_KEY cannot be empty")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid MERGEDB_LOG_FORMAT '{self.observability.log_format}'. "
                "Must be one of: json, text"
            )

        if self.repo.backend == RepoBackend.SQLITE:
            parent = os.path.dirname(os.path.abspath(self.repo.sqlite_path))
            if not os.path.exists(parent):
                logger.warning(
                    f"SQLite directory does not exist: {parent}. "
                    "It will be created on first write."
                )

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "MergeDB configuration loaded",
            extra={
                "repo_backend": self.repo.backend.value,
                "sqlite_path": self.repo.sqlite_path
                if self.repo.backend == RepoBackend.SQLITE
                else None,
                "root_id_key": self.database.root_id_key,
                "serialize_writes": self.database.serialize_writes,
                "log_level": self.observability.log_level,
            },
        )
