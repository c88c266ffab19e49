"""Scholarship record stores."""

from __future__ import annotations

from typing import Union

from scholarguard.config.config import StorageConfig

from .memory_store import InMemoryScholarshipStore
from .sqlite_store import SQLiteScholarshipStore

AnyStore = Union[InMemoryScholarshipStore, SQLiteScholarshipStore]


def create_store(config: StorageConfig) -> AnyStore:
    """Build the store selected by ``storage.backend``."""
    if config.backend == "memory":
        return InMemoryScholarshipStore()
    return SQLiteScholarshipStore(config)


__all__ = ["AnyStore", "InMemoryScholarshipStore", "SQLiteScholarshipStore", "create_store"]
