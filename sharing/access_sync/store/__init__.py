"""
Store module for access-sync - experiences, grants and categories.

This module provides the two stores the engine reads and writes:
- ItemStore: experiences, category records and the denormalized access-set
- GrantStore: the normalized share table

Backends:
- SqliteStore (production, single node)
- InMemoryStore (tests and local development)

Invariants:
    - Access-set writes go through bounded atomic WriteBatch objects
    - Grant queries take at most max_predicate_values scope IDs
    - The grant table is the source of truth; access-sets can be rebuilt

How to change safely:
    - New backends must implement both protocols and honour both caps
    - Verify batch atomicity with failure injection tests
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import (
    AccessLevel,
    AccessMutation,
    Category,
    CategoryKind,
    Cursor,
    Experience,
    ExperienceSources,
    Grant,
    GrantScope,
    GrantStore,
    ItemStore,
    MutationOp,
    WriteBatch,
    chunked,
)
from .memory import InMemoryStore
from .sqlite import SqliteStore

if TYPE_CHECKING:
    from ..config import StorageConfig


def create_store(config: StorageConfig) -> SqliteStore | InMemoryStore:
    """Factory function to create a store from configuration.

    The returned object implements both ItemStore and GrantStore.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend

    if config.backend == StoreBackend.SQLITE:
        return SqliteStore(
            data_dir=config.data_dir,
            db_filename=config.db_filename,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_pages=config.cache_size_pages,
            max_batch_size=config.max_batch_size,
            max_predicate_values=config.max_predicate_values,
        )
    elif config.backend == StoreBackend.MEMORY:
        return InMemoryStore(
            max_batch_size=config.max_batch_size,
            max_predicate_values=config.max_predicate_values,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")


__all__ = [
    # Protocols
    "ItemStore",
    "GrantStore",
    # Types
    "AccessLevel",
    "AccessMutation",
    "Category",
    "CategoryKind",
    "Cursor",
    "Experience",
    "ExperienceSources",
    "Grant",
    "GrantScope",
    "MutationOp",
    "WriteBatch",
    "chunked",
    # Implementations
    "InMemoryStore",
    "SqliteStore",
    "create_store",
]
