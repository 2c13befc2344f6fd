"""
Inventory lookup service: cache, fetch client and preloader wired together.

Build one instance at startup and pass it to whatever needs lookups;
get_lookup_service() does that for the web app.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from tenacity import (
    Retrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from config.settings import Settings, settings as default_settings
from inventory_cache.cache import (
    CacheConfig,
    InventoryCache,
    MemoryBlobStore,
    RequestCoalescer,
    SQLiteBlobStore,
)
from inventory_cache.exceptions import (
    FetchCancelledError,
    FetchError,
    PersistenceError,
)
from inventory_cache.fetch_client import CancelToken, InventoryFetchClient
from inventory_cache.models import ItemInventory
from inventory_cache.preload import PreloadScheduler, PreloadState, PreloadSummary

logger = logging.getLogger("inventory_cache.service")


def _encode_inventory(inventory: ItemInventory) -> Dict[str, Any]:
    return inventory.to_dict()


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, FetchError) and error.retryable


class InventoryLookupService:
    """
    Get-or-fetch lookups plus the cache and preload admin surface.

    Direct lookups and preload runs share one RequestCoalescer, so an item
    being warmed in the background is not fetched a second time when the
    UI asks for it at the same moment.
    """

    def __init__(
        self,
        cache: InventoryCache,
        client: InventoryFetchClient,
        state: Optional[PreloadState] = None,
        fetch_timeout: float = 12.0,
        retry_attempts: int = 1,
        retry_backoff: float = 0.5,
        preload_limit: Optional[int] = None,
        scheduler_options: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            cache: Store for lookup results
            client: HTTP client for the inventory endpoint
            state: Shared circuit breaker; a fresh one if omitted
            fetch_timeout: Deadline for direct lookups and preload fetches
            retry_attempts: Total tries for a direct lookup (1 = no retry)
            retry_backoff: Exponential backoff multiplier between tries
            preload_limit: Max candidates considered per preload run
            scheduler_options: Extra PreloadScheduler keyword arguments
        """
        self.cache = cache
        self.client = client
        self.state = state or PreloadState()
        self.fetch_timeout = fetch_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.preload_limit = preload_limit
        self._coalescer = RequestCoalescer(timeout=fetch_timeout * 2)
        self.scheduler = PreloadScheduler(
            cache,
            self._fetch_shared,
            state=self.state,
            fetch_timeout=fetch_timeout,
            **(scheduler_options or {}),
        )

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "InventoryLookupService":
        """Build a service from application settings."""
        config = config or default_settings
        blob_store = MemoryBlobStore(max_blob_bytes=config.cache_max_blob_bytes)
        if config.cache_persist_enabled:
            try:
                blob_store = SQLiteBlobStore(
                    config.cache_db_path, max_blob_bytes=config.cache_max_blob_bytes
                )
            except PersistenceError as e:
                logger.warning(f"Cache persistence unavailable, keeping cache in memory: {e}")

        cache = InventoryCache(
            CacheConfig(
                ttl_seconds=config.cache_ttl_seconds,
                max_entries=config.cache_max_entries,
            ),
            blob_store=blob_store,
            encode=_encode_inventory,
            decode=ItemInventory.from_dict,
        )
        client = InventoryFetchClient(
            config.inventory_api_base_url,
            token=config.inventory_api_token,
            default_timeout=config.fetch_timeout_seconds,
        )
        return cls(
            cache,
            client,
            state=PreloadState(failure_threshold=config.preload_failure_threshold),
            fetch_timeout=config.fetch_timeout_seconds,
            retry_attempts=config.lookup_retry_attempts,
            preload_limit=config.preload_visible_limit,
            scheduler_options={
                "batch_size": config.preload_batch_size,
                "item_delay": config.preload_item_delay_seconds,
                "batch_delay": config.preload_batch_delay_seconds,
                "queue_size": config.preload_queue_size,
            },
        )

    def _fetch_shared(self, item_name: str, timeout: float) -> ItemInventory:
        return self._coalescer.get_or_fetch(
            item_name,
            lambda: self.client.fetch(item_name, timeout=timeout),
        )

    def lookup(self, item_name: str, cancel_token: Optional[CancelToken] = None) -> ItemInventory:
        """
        Return the holders of item_name, from cache or upstream.

        An empty ItemInventory means nobody holds the item. A failed fetch
        raises instead, so callers can show "data unavailable".

        Args:
            item_name: Item to look up
            cancel_token: Abort the upstream request (e.g. on navigation).
                A cancelled lookup leaves the cache untouched.

        Raises:
            FetchTimeoutError: Upstream did not answer in time
            NetworkError: Upstream failed or answered with garbage
            FetchCancelledError: cancel_token was cancelled
        """
        cached = self.cache.get(item_name)
        if cached is not None:
            return cached

        logger.info(f"CACHE MISS: {item_name}")
        if cancel_token is None:
            fetch = self._fetch_shared
            args = (item_name, self.fetch_timeout)
        else:
            # A cancellable request is not shared; cancelling it must not
            # fail other callers.
            fetch = self.client.fetch
            args = (item_name, self.fetch_timeout, cancel_token)

        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=4),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        inventory = retrying(fetch, *args)

        if cancel_token is not None and cancel_token.cancelled:
            raise FetchCancelledError(f"Lookup for {item_name!r} cancelled", key=item_name)
        self.cache.set(item_name, inventory)
        return inventory

    # ------------------------------------------------------------------
    # Cache admin
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Cache statistics plus preload status."""
        result = self.cache.stats().to_dict()
        preload = self.state.status()
        result["preloading"] = preload["status"]
        result["preload"] = preload
        result["coalescer"] = self._coalescer.get_stats()
        if self.scheduler.last_summary is not None:
            result["lastPreload"] = self.scheduler.last_summary.to_dict()
        return result

    def clear(self) -> int:
        return self.cache.clear()

    def has(self, item_name: str) -> bool:
        return self.cache.has(item_name)

    def remove_key(self, item_name: str) -> bool:
        return self.cache.remove(item_name)

    def list_keys(self) -> List[str]:
        return self.cache.keys()

    # ------------------------------------------------------------------
    # Preload control
    # ------------------------------------------------------------------

    def enable_preloading(self) -> Dict[str, Any]:
        self.state.enable()
        return self.state.status()

    def disable_preloading(self) -> Dict[str, Any]:
        self.state.disable()
        return self.state.status()

    def preload_status(self) -> Dict[str, Any]:
        return self.state.status()

    def preload(self, item_names: Iterable[str], limit: Optional[int] = None) -> PreloadSummary:
        """Warm the cache now; refused while preloading is disabled."""
        summary = self.scheduler.run(item_names, limit=limit or self.preload_limit)
        self.scheduler.last_summary = summary
        return summary

    def schedule_preload(self, item_names: Iterable[str], limit: Optional[int] = None) -> bool:
        """Queue a preload run for the background worker."""
        return self.scheduler.submit(item_names, limit=limit or self.preload_limit)

    def force_preload(self, item_names: Iterable[str]) -> PreloadSummary:
        """Re-enable preloading and warm the given items right away."""
        summary = self.scheduler.run(item_names, force=True)
        self.scheduler.last_summary = summary
        return summary

    def close(self) -> None:
        """Stop the preload worker and release HTTP connections."""
        self.scheduler.shutdown()
        self.client.close()


# Global lookup service instance
_lookup_service: Optional[InventoryLookupService] = None


def get_lookup_service() -> InventoryLookupService:
    """Get or create the global lookup service."""
    global _lookup_service
    if _lookup_service is None:
        _lookup_service = InventoryLookupService.from_settings()
    return _lookup_service


def set_lookup_service(service: Optional[InventoryLookupService]) -> None:
    """Replace the global lookup service (tests, app shutdown)."""
    global _lookup_service
    _lookup_service = service


def close_lookup_service() -> None:
    """Close and forget the global lookup service, if one was built."""
    global _lookup_service
    if _lookup_service is not None:
        _lookup_service.close()
        _lookup_service = None
