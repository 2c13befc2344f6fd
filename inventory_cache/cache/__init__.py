"""
Inventory lookup cache with TTL expiry, oldest-first eviction and persistence.
"""
from .core import (
    CacheConfig,
    CacheStats,
    SCHEMA_VERSION,
    VALUES_BLOB,
    TIMESTAMPS_BLOB,
)
from .persistence import BlobStore, MemoryBlobStore, SQLiteBlobStore
from .store import InventoryCache
from .coalescer import RequestCoalescer

__all__ = [
    # Core types
    "CacheConfig",
    "CacheStats",
    "SCHEMA_VERSION",
    "VALUES_BLOB",
    "TIMESTAMPS_BLOB",
    # Persistence
    "BlobStore",
    "MemoryBlobStore",
    "SQLiteBlobStore",
    # Store
    "InventoryCache",
    # Coalescing
    "RequestCoalescer",
]
