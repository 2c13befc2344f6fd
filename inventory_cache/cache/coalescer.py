"""
Request coalescing for item lookups.

A UI lookup and a background preload can ask for the same item at the same
time; only the first caller goes upstream and the others wait for its result.
"""
import threading
import time
import logging
from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, field

from inventory_cache.exceptions import FetchTimeoutError

logger = logging.getLogger("cache.coalescer")


@dataclass
class SharedFetch:
    """An upstream fetch for one item that other callers may join."""
    item_name: str
    done: threading.Event = field(default_factory=threading.Event)
    result: Any = None
    error: Optional[Exception] = None
    started_at: float = field(default_factory=time.monotonic)
    followers: int = 0

    def outcome(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.result


class RequestCoalescer:
    """
    Shares one upstream call among concurrent callers for the same item.

    The leader runs fetch_fn; followers block on the leader's event and
    receive the same inventory or exception. A follower that gives up
    waiting gets FetchTimeoutError, the same failure a direct fetch
    reports, so it is retried and surfaced like any other timeout.
    """

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Default seconds a follower waits for the leader
        """
        self._fetches: Dict[str, SharedFetch] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self.led = 0
        self.shared = 0

    def get_or_fetch(
        self,
        item_name: str,
        fetch_fn: Callable[[], Any],
        wait: Optional[float] = None,
    ) -> Any:
        """
        Join an in-flight fetch for item_name, or start one.

        Args:
            item_name: Item being fetched
            fetch_fn: Performs the upstream fetch when this caller leads
            wait: Seconds to wait as a follower (default: the coalescer timeout)

        Raises:
            FetchTimeoutError: The leader did not finish within the wait
            Exception: Whatever fetch_fn raised
        """
        with self._lock:
            shared = self._fetches.get(item_name)
            if shared is None:
                shared = SharedFetch(item_name=item_name)
                self._fetches[item_name] = shared
                self.led += 1
                leading = True
            else:
                shared.followers += 1
                leading = False

        if leading:
            return self._lead(shared, fetch_fn)
        return self._follow(shared, self._timeout if wait is None else wait)

    def _lead(self, shared: SharedFetch, fetch_fn: Callable[[], Any]) -> Any:
        try:
            shared.result = fetch_fn()
        except Exception as e:
            shared.error = e
        finally:
            with self._lock:
                self._fetches.pop(shared.item_name, None)
            shared.done.set()
        return shared.outcome()

    def _follow(self, shared: SharedFetch, wait: float) -> Any:
        logger.debug(f"Joining in-flight fetch for {shared.item_name} ({shared.followers} waiting)")
        if not shared.done.wait(timeout=wait):
            waited = time.monotonic() - shared.started_at
            logger.warning(
                f"Gave up on in-flight fetch for {shared.item_name} after {wait}s "
                f"(running {waited:.1f}s)"
            )
            raise FetchTimeoutError(shared.item_name, wait)
        with self._lock:
            self.shared += 1
        return shared.outcome()

    @property
    def active_requests(self) -> int:
        """Number of fetches currently in flight."""
        with self._lock:
            return len(self._fetches)

    def followers_of(self, item_name: str) -> int:
        """Callers currently waiting on the in-flight fetch for item_name."""
        with self._lock:
            shared = self._fetches.get(item_name)
            return shared.followers if shared is not None else 0

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "activeRequests": len(self._fetches),
                "activeKeys": list(self._fetches),
                "upstreamFetches": self.led,
                "sharedResults": self.shared,
            }
