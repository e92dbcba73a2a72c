"""
Configuration management for ArtDB.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Configuration objects are immutable once loaded

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable; deprecate by logging warnings
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


@dataclass(frozen=True)
class StorageConfig:
    """SQLite storage configuration.

    Attributes:
        path: Database file path, or ":memory:" for a private in-memory database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout, also the writer-lock wait limit
        cache_size_pages: SQLite cache size in pages (negative = KB)
        pool_size: Maximum idle connections kept for reuse
    """

    path: str = "artdb.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB
    pool_size: int = 4

    @property
    def in_memory(self) -> bool:
        return self.path == MEMORY_PATH

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("ARTDB_PATH", "artdb.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
            pool_size=int(os.getenv("ARTDB_POOL_SIZE", "4")),
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
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass
class StoreConfig:
    """Complete store configuration.

    Attributes:
        storage: SQLite storage configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    @classmethod
    def for_path(cls, path: str, **storage_overrides) -> StoreConfig:
        """Build a configuration for an explicit database path."""
        return cls(storage=StorageConfig(path=path, **storage_overrides))

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.path:
            raise ValueError("ARTDB_PATH must not be empty")
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must be >= 0")
        if self.storage.pool_size < 1:
            raise ValueError("ARTDB_POOL_SIZE must be >= 1")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not self.storage.in_memory:
            parent = Path(self.storage.path).parent
            if not parent.exists():
                logger.warning(
                    f"Database directory does not exist: {parent}. "
                    "It will be created on open."
                )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Store configuration loaded",
            extra={
                "path": self.storage.path,
                "wal_mode": self.storage.wal_mode,
                "busy_timeout_ms": self.storage.busy_timeout_ms,
                "pool_size": self.storage.pool_size,
                "log_level": self.observability.log_level,
            },
        )
