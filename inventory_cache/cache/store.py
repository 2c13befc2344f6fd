"""
TTL- and capacity-bounded key/value store with durable persistence.

Expiry is lazy: an entry past its TTL is dropped the next time it is read,
there is no background sweep. When full, the entry with the oldest store
time is evicted before a new key is written.
"""
import json
import time
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from .core import CacheConfig, CacheStats, VALUES_BLOB, TIMESTAMPS_BLOB
from .persistence import BlobStore, MemoryBlobStore
from ..exceptions import PersistenceError

logger = logging.getLogger("cache.store")


def _identity(value: Any) -> Any:
    return value


class InventoryCache:
    """
    Key/value cache of item lookups.

    Values and store times live in two parallel maps that always share the
    same key set; both are only touched while holding the lock. Every
    mutation is followed by a best-effort persist.

    Usage:
        cache = InventoryCache(CacheConfig(ttl_seconds=3600, max_entries=500))
        cache.set("Ancient Gear", inventory)
        cache.get("Ancient Gear")
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        blob_store: Optional[BlobStore] = None,
        clock: Callable[[], float] = time.time,
        encode: Callable[[Any], Any] = _identity,
        decode: Callable[[Any], Any] = _identity,
    ):
        """
        Initialize the store and load any persisted entries.

        Args:
            config: TTL and capacity; defaults to 12 hours / 1000 entries
            blob_store: Durable storage; defaults to an in-memory store
            clock: Returns the current time in epoch seconds
            encode: Turns a value into something json.dumps accepts
            decode: Inverse of encode, applied to persisted values on load
        """
        self.config = config or CacheConfig()
        self._blobs = blob_store if blob_store is not None else MemoryBlobStore()
        self._clock = clock
        self._encode = encode
        self._decode = decode

        self._data: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

        self.load()

    def _is_expired(self, stored_at: float, now: float) -> bool:
        return now - stored_at > self.config.ttl_seconds

    def _drop(self, key: str) -> None:
        self._data.pop(key, None)
        self._timestamps.pop(key, None)

    def _lookup(self, key: str, record: bool) -> Tuple[bool, Any]:
        """Return (found, value), expiring the entry if it is stale."""
        with self._lock:
            stored_at = self._timestamps.get(key)
            if stored_at is None:
                if record:
                    self._misses += 1
                return False, None

            if self._is_expired(stored_at, self._clock()):
                logger.info(f"CACHE EXPIRED: {key}")
                self._drop(key)
                self.persist()
                if record:
                    self._misses += 1
                return False, None

            if record:
                self._hits += 1
            return True, self._data[key]

    def get(self, key: str) -> Optional[Any]:
        """
        Return the cached value, or None if missing or expired.

        An expired entry is removed from the store as a side effect.
        """
        found, value = self._lookup(key, record=True)
        if found:
            logger.debug(f"CACHE HIT: {key}")
        return value if found else None

    def has(self, key: str, record: bool = True) -> bool:
        """
        Check whether a fresh entry exists for key.

        Args:
            key: Cache key
            record: Count this check towards the hit rate. The preloader
                passes False so warming does not skew the statistics.
        """
        found, _ = self._lookup(key, record=record)
        return found

    def __contains__(self, key: str) -> bool:
        return self.has(key, record=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def set(self, key: str, value: Any) -> None:
        """Store value under key with a fresh timestamp, evicting if full."""
        with self._lock:
            if key not in self._data and len(self._data) >= self.config.max_entries:
                self._evict_oldest_locked()
            self._data[key] = value
            self._timestamps[key] = self._clock()
            self.persist()

    def _evict_oldest_locked(self) -> Optional[str]:
        oldest_key = None
        oldest_time = None
        for key, stored_at in self._timestamps.items():
            if oldest_time is None or stored_at < oldest_time:
                oldest_key = key
                oldest_time = stored_at
        if oldest_key is not None:
            self._drop(oldest_key)
            logger.info(f"CACHE EVICT: {oldest_key}")
        return oldest_key

    def evict_oldest(self) -> Optional[str]:
        """
        Remove the entry with the smallest store time.

        Ties go to the first key encountered. Returns the evicted key, or
        None if the store was empty.
        """
        with self._lock:
            evicted = self._evict_oldest_locked()
            if evicted is not None:
                self.persist()
            return evicted

    def remove(self, key: str) -> bool:
        """
        Remove a single entry.

        Returns:
            True if the entry was present
        """
        with self._lock:
            if key not in self._data:
                return False
            self._drop(key)
            self.persist()
        logger.info(f"Removed {key} from cache")
        return True

    def keys(self) -> List[str]:
        """Keys currently held, fresh or not."""
        with self._lock:
            return list(self._data)

    def clear(self) -> int:
        """
        Empty the store and erase its persisted blobs.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._data)
            self._data.clear()
            self._timestamps.clear()
            for name in (VALUES_BLOB, TIMESTAMPS_BLOB):
                try:
                    self._blobs.delete(name)
                except PersistenceError as e:
                    logger.warning(f"Failed to erase persisted cache blob: {e}")
        logger.info(f"Cleared {count} cache entries")
        return count

    def persist(self) -> None:
        """
        Write both maps to the blob store.

        Never raises: a failed write is logged and the in-memory state is
        kept as-is.
        """
        with self._lock:
            try:
                values = json.dumps({k: self._encode(v) for k, v in self._data.items()})
                timestamps = json.dumps(self._timestamps)
                self._blobs.write(VALUES_BLOB, values)
                self._blobs.write(TIMESTAMPS_BLOB, timestamps)
            except (PersistenceError, TypeError, ValueError) as e:
                logger.warning(f"Failed to persist cache: {e}")

    def load(self) -> int:
        """
        Replace the in-memory maps with the unexpired persisted entries.

        A missing, corrupt or oversized blob leaves the cache empty.

        Returns:
            Number of entries admitted
        """
        with self._lock:
            self._data.clear()
            self._timestamps.clear()

            try:
                raw_values = self._blobs.read(VALUES_BLOB)
                raw_timestamps = self._blobs.read(TIMESTAMPS_BLOB)
            except PersistenceError as e:
                logger.warning(f"Failed to load cache, starting cold: {e}")
                return 0

            if not raw_values or not raw_timestamps:
                return 0

            limit = self._blobs.max_blob_bytes
            if limit is not None and max(len(raw_values), len(raw_timestamps)) > limit:
                logger.warning("Persisted cache is over the size quota, starting cold")
                return 0

            try:
                values = json.loads(raw_values)
                timestamps = json.loads(raw_timestamps)
            except ValueError as e:
                logger.warning(f"Persisted cache is corrupt, starting cold: {e}")
                return 0
            if not isinstance(values, dict) or not isinstance(timestamps, dict):
                logger.warning("Persisted cache has an unexpected layout, starting cold")
                return 0

            now = self._clock()
            for key, stored_at in timestamps.items():
                if key not in values:
                    continue
                if isinstance(stored_at, bool) or not isinstance(stored_at, (int, float)):
                    continue
                if self._is_expired(stored_at, now):
                    continue
                if len(self._data) >= self.config.max_entries:
                    break
                try:
                    value = self._decode(values[key])
                except (KeyError, TypeError, ValueError) as e:
                    logger.debug(f"Skipping unreadable persisted entry {key}: {e}")
                    continue
                self._data[key] = value
                self._timestamps[key] = float(stored_at)

            logger.info(f"Loaded {len(self._data)} cache entries from storage")
            return len(self._data)

    def stored_at(self, key: str) -> Optional[float]:
        """Store time of key, without expiring it."""
        with self._lock:
            return self._timestamps.get(key)

    def stats(self) -> CacheStats:
        """Get cache statistics."""
        with self._lock:
            return CacheStats(
                size=len(self._data),
                max_entries=self.config.max_entries,
                ttl_seconds=self.config.ttl_seconds,
                hits=self._hits,
                misses=self._misses,
            )
