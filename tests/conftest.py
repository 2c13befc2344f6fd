"""
Shared fixtures: a controllable clock, a recording sleep and a fake
inventory client, so cache and preload behaviour can be tested without
waiting or touching the network.
"""
import pytest

from inventory_cache.cache import CacheConfig, InventoryCache, MemoryBlobStore
from inventory_cache.models import ItemHolder, ItemInventory
from inventory_cache.preload import PreloadState
from inventory_cache.service import InventoryLookupService


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeInventoryClient:
    """
    Stand-in for InventoryFetchClient.

    outcomes maps an item name to a list of results consumed in order; an
    Exception instance is raised, anything else is returned. Items without
    an outcome get a single holder.
    """

    def __init__(self, outcomes=None, events=None):
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.calls = []
        self.events = events if events is not None else []
        self.closed = False

    def fetch(self, item_name, timeout=None, cancel_token=None):
        self.calls.append(item_name)
        self.events.append(("fetch", item_name))
        queue = self.outcomes.get(item_name)
        result = queue.pop(0) if queue else make_inventory(item_name)
        if isinstance(result, Exception):
            raise result
        return result

    def close(self):
        self.closed = True


def make_inventory(item_name, *holders):
    """Inventory with the given (name, quantity) pairs, or one default holder."""
    holders = holders or (("Link", 1),)
    return ItemInventory(
        item_name=item_name,
        holders=[ItemHolder(holder_name=name, quantity=qty) for name, qty in holders],
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    """Ordered log of fetches and sleeps."""
    return []


@pytest.fixture
def recording_sleep(events):
    def sleep(seconds):
        events.append(("sleep", seconds))
    return sleep


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def cache(clock, blob_store):
    return InventoryCache(
        CacheConfig(ttl_seconds=1000, max_entries=10),
        blob_store=blob_store,
        clock=clock,
    )


@pytest.fixture
def fake_client(events):
    return FakeInventoryClient(events=events)


@pytest.fixture
def service(clock, fake_client, recording_sleep):
    inventory_cache = InventoryCache(
        CacheConfig(ttl_seconds=3600, max_entries=50),
        blob_store=MemoryBlobStore(),
        clock=clock,
        encode=lambda inv: inv.to_dict(),
        decode=ItemInventory.from_dict,
    )
    svc = InventoryLookupService(
        inventory_cache,
        fake_client,
        state=PreloadState(failure_threshold=3),
        fetch_timeout=5.0,
        retry_attempts=1,
        retry_backoff=0,
        scheduler_options={"sleep": recording_sleep},
    )
    yield svc
    svc.close()
