"""
Tests for the lookup service: get-or-fetch, error propagation, retries,
admin operations and construction from settings.
"""
import threading
import time

import pytest

from config.settings import Settings
from inventory_cache.cache import (
    CacheConfig,
    InventoryCache,
    RequestCoalescer,
    SQLiteBlobStore,
)
from inventory_cache.exceptions import (
    FetchCancelledError,
    FetchTimeoutError,
    InvalidResponseError,
    NetworkError,
)
from inventory_cache.fetch_client import CancelToken
from inventory_cache.models import ItemHolder, ItemInventory
from inventory_cache.service import InventoryLookupService

from conftest import make_inventory


# =============================================================================
# Lookup
# =============================================================================

class TestLookup:

    def test_miss_fetches_then_hit_serves_from_cache(self, service, fake_client):
        first = service.lookup("Amber")
        second = service.lookup("Amber")

        assert fake_client.calls == ["Amber"]
        assert second is first
        stats = service.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    def test_expired_entry_is_refetched(self, service, fake_client, clock):
        service.lookup("Amber")
        clock.advance(3601)
        service.lookup("Amber")
        assert fake_client.calls == ["Amber", "Amber"]

    def test_empty_result_is_cached_not_an_error(self, service, fake_client):
        fake_client.outcomes["Dust"] = [ItemInventory(item_name="Dust")]
        inventory = service.lookup("Dust")

        assert inventory.is_empty
        assert service.has("Dust")

    def test_failure_propagates_and_is_not_cached(self, service, fake_client):
        fake_client.outcomes["Amber"] = [NetworkError("HTTP 500", key="Amber", status_code=500)]
        with pytest.raises(NetworkError):
            service.lookup("Amber")
        assert not service.has("Amber")

    def test_timeout_is_retried(self, clock, fake_client):
        svc = _service_with(fake_client, clock, retry_attempts=2)
        fake_client.outcomes["Amber"] = [FetchTimeoutError("Amber", 5)]

        inventory = svc.lookup("Amber")

        assert fake_client.calls == ["Amber", "Amber"]
        assert inventory.item_name == "Amber"

    def test_invalid_response_is_not_retried(self, clock, fake_client):
        svc = _service_with(fake_client, clock, retry_attempts=3)
        fake_client.outcomes["Amber"] = [InvalidResponseError("bad body", key="Amber")]

        with pytest.raises(InvalidResponseError):
            svc.lookup("Amber")
        assert fake_client.calls == ["Amber"]

    def test_retries_exhausted_reraises_last_error(self, clock, fake_client):
        svc = _service_with(fake_client, clock, retry_attempts=2)
        fake_client.outcomes["Amber"] = [
            FetchTimeoutError("Amber", 5),
            FetchTimeoutError("Amber", 5),
        ]
        with pytest.raises(FetchTimeoutError):
            svc.lookup("Amber")
        assert len(fake_client.calls) == 2

    def test_cancelled_lookup_leaves_cache_untouched(self, service, fake_client):
        token = CancelToken()

        def fetch(item_name, timeout=None, cancel_token=None):
            cancel_token.cancel()
            return make_inventory(item_name)

        fake_client.fetch = fetch
        with pytest.raises(FetchCancelledError):
            service.lookup("Amber", cancel_token=token)
        assert service.list_keys() == []


def _service_with(client, clock, retry_attempts):
    cache = InventoryCache(
        CacheConfig(ttl_seconds=60, max_entries=5),
        clock=clock,
        encode=lambda inv: inv.to_dict(),
    )
    return InventoryLookupService(
        cache,
        client,
        retry_attempts=retry_attempts,
        retry_backoff=0,
        scheduler_options={"sleep": lambda seconds: None},
    )


# =============================================================================
# Admin and preload control
# =============================================================================

class TestAdmin:

    def test_remove_and_clear(self, service):
        service.lookup("Amber")
        service.lookup("Flint")
        assert sorted(service.list_keys()) == ["Amber", "Flint"]

        assert service.remove_key("Amber") is True
        assert service.remove_key("Amber") is False
        assert service.clear() == 1
        assert service.list_keys() == []

    def test_stats_shape(self, service):
        stats = service.stats()
        assert stats["size"] == 0
        assert stats["maxEntries"] == 50
        assert stats["hitRate"] == 0
        assert stats["preloading"] == "Enabled"
        assert "lastPreload" not in stats

    def test_preload_control_surface(self, service, fake_client):
        assert service.disable_preloading()["disabled"] is True
        assert service.preload(["a", "b"]).refused is True
        assert fake_client.calls == []

        summary = service.force_preload(["a", "b"])
        assert summary.succeeded == 2
        assert service.preload_status()["status"] == "Enabled"
        assert service.stats()["lastPreload"]["succeeded"] == 2

        assert service.enable_preloading()["disabled"] is False

    def test_preload_then_lookup_is_a_hit(self, service, fake_client):
        service.preload(["Amber"])
        service.lookup("Amber")
        assert fake_client.calls == ["Amber"]
        assert service.stats()["hits"] == 1

    def test_preload_limit_applies(self, service, fake_client):
        service.preload_limit = 2
        service.preload(["a", "b", "c"])
        assert fake_client.calls == ["a", "b"]

    def test_schedule_preload_runs_in_background(self, service, fake_client):
        assert service.schedule_preload(["a"]) is True
        service.scheduler.wait_idle()
        assert service.has("a")

    def test_close_shuts_down_client(self, service, fake_client):
        service.close()
        assert fake_client.closed


# =============================================================================
# Coalescing
# =============================================================================

def test_concurrent_fetches_for_same_key_share_one_call():
    coalescer = RequestCoalescer(timeout=5)
    release = threading.Event()
    calls = []
    results = []

    def slow_fetch():
        calls.append(1)
        release.wait(5)
        return "value"

    def worker():
        results.append(coalescer.get_or_fetch("Amber", slow_fetch))

    leader = threading.Thread(target=worker)
    leader.start()
    deadline = time.time() + 5
    while coalescer.active_requests == 0 and time.time() < deadline:
        time.sleep(0.01)

    follower = threading.Thread(target=worker)
    follower.start()
    deadline = time.time() + 5
    while coalescer.followers_of("Amber") == 0 and time.time() < deadline:
        time.sleep(0.01)

    release.set()
    leader.join(5)
    follower.join(5)

    assert calls == [1]
    assert results == ["value", "value"]
    assert coalescer.active_requests == 0
    assert coalescer.get_stats()["sharedResults"] == 1


def test_coalescer_shares_errors():
    coalescer = RequestCoalescer()

    def failing():
        raise NetworkError("down")

    with pytest.raises(NetworkError):
        coalescer.get_or_fetch("Amber", failing)
    stats = coalescer.get_stats()
    assert stats["activeRequests"] == 0
    assert stats["activeKeys"] == []
    assert stats["upstreamFetches"] == 1


def test_follower_that_gives_up_gets_a_retryable_fetch_timeout():
    coalescer = RequestCoalescer(timeout=5)
    release = threading.Event()
    leader = threading.Thread(
        target=coalescer.get_or_fetch,
        args=("Amber", lambda: release.wait(5)),
    )
    leader.start()
    deadline = time.time() + 5
    while coalescer.active_requests == 0 and time.time() < deadline:
        time.sleep(0.01)

    try:
        with pytest.raises(FetchTimeoutError) as exc_info:
            coalescer.get_or_fetch("Amber", lambda: "unused", wait=0.1)
    finally:
        release.set()
        leader.join(5)

    assert exc_info.value.key == "Amber"
    assert exc_info.value.retryable
    assert coalescer.get_stats()["sharedResults"] == 0


# =============================================================================
# Construction from settings
# =============================================================================

def test_from_settings_persists_across_instances(tmp_path):
    config = Settings(
        cache_db_path=tmp_path / "inventory.db",
        cache_ttl_seconds=600,
        cache_max_entries=20,
        preload_failure_threshold=4,
    )
    first = InventoryLookupService.from_settings(config)
    try:
        assert isinstance(first.cache._blobs, SQLiteBlobStore)
        assert first.state.failure_threshold == 4
        assert first.scheduler.batch_size == config.preload_batch_size
        first.cache.set("Amber", make_inventory("Amber", ("Link", 3)))
    finally:
        first.close()

    second = InventoryLookupService.from_settings(config)
    try:
        restored = second.cache.get("Amber")
        assert restored.holders == [ItemHolder(holder_name="Link", quantity=3)]
    finally:
        second.close()


def test_from_settings_without_persistence(tmp_path):
    config = Settings(cache_persist_enabled=False, cache_db_path=tmp_path / "unused.db")
    svc = InventoryLookupService.from_settings(config)
    try:
        assert not (tmp_path / "unused.db").exists()
        assert svc.cache.config.max_entries == config.cache_max_entries
    finally:
        svc.close()
