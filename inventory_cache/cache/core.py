"""
Core cache data structures.
"""
from dataclasses import dataclass
from typing import Any, Dict


# Bump when the persisted layout changes; old blobs are then ignored
SCHEMA_VERSION = 1
VALUES_BLOB = f"inventory_cache.v{SCHEMA_VERSION}.values"
TIMESTAMPS_BLOB = f"inventory_cache.v{SCHEMA_VERSION}.timestamps"

DEFAULT_TTL_SECONDS = 12 * 60 * 60
DEFAULT_MAX_ENTRIES = 1000


@dataclass(frozen=True)
class CacheConfig:
    """TTL and capacity bound, fixed when the store is built."""
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    max_entries: int = DEFAULT_MAX_ENTRIES

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if self.max_entries < 1:
            raise ValueError("max_entries must be at least 1")


@dataclass
class CacheStats:
    """
    Snapshot of cache occupancy and effectiveness.
    """
    size: int
    max_entries: int
    ttl_seconds: float
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served fresh; 0 before any lookup."""
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "size": self.size,
            "maxEntries": self.max_entries,
            "ttlHours": round(self.ttl_seconds / 3600, 2),
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": round(self.hit_rate, 3),
        }
