"""
Preload scheduler: warms the cache for items the UI is about to show.

Keys are fetched one at a time in small batches with a pause between keys
and a longer pause between batches, so a cold page never floods the backing
service. A run stops as soon as the circuit breaker opens.
"""
import time
import queue
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..cache.store import InventoryCache
from ..exceptions import FetchCancelledError
from .breaker import PreloadState

logger = logging.getLogger("preload.scheduler")

DEFAULT_BATCH_SIZE = 3
DEFAULT_ITEM_DELAY = 0.2
DEFAULT_BATCH_DELAY = 0.5
DEFAULT_FETCH_TIMEOUT = 12.0


@dataclass
class PreloadSummary:
    """Outcome of one preload run."""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_cached: int = 0
    refused: bool = False    # Breaker was already open, nothing attempted
    aborted: bool = False    # Breaker opened during this run
    cancelled: bool = False
    forced: bool = False
    failures: List[Tuple[str, str]] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skippedCached": self.skipped_cached,
            "refused": self.refused,
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "forced": self.forced,
            "failures": [{"item": key, "error": reason} for key, reason in self.failures],
            "durationSeconds": round(self.duration_seconds, 3),
        }


class PreloadScheduler:
    """
    Sequential, batched cache warmer.

    Synchronous runs go through run(); submit() hands a run to a single
    background worker fed by a bounded queue, which keeps at most one
    preload touching the backing service at any time.
    """

    def __init__(
        self,
        cache: InventoryCache,
        fetch_fn: Callable[[str, float], Any],
        state: Optional[PreloadState] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        item_delay: float = DEFAULT_ITEM_DELAY,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        queue_size: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            cache: Store that receives fetched values
            fetch_fn: Called as fetch_fn(key, timeout); returns the value to cache
            state: Shared circuit breaker
            batch_size: Keys per batch
            item_delay: Seconds between keys within a batch
            batch_delay: Seconds between batches
            fetch_timeout: Deadline passed to every fetch
            queue_size: Max runs waiting for the background worker
            sleep: Delay function, replaceable in tests
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.cache = cache
        self.state = state or PreloadState()
        self.batch_size = batch_size
        self.item_delay = item_delay
        self.batch_delay = batch_delay
        self.fetch_timeout = fetch_timeout
        self._fetch = fetch_fn
        self._sleep = sleep

        self._queue: "queue.Queue[Optional[Tuple[List[str], Optional[int], bool]]]" = queue.Queue(
            maxsize=queue_size
        )
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()
        self.last_summary: Optional[PreloadSummary] = None

    def pending_keys(self, candidates: Iterable[str], limit: Optional[int] = None) -> List[str]:
        """Candidates in order, de-duplicated and minus keys already fresh in the cache."""
        keys = list(dict.fromkeys(candidates))
        if limit is not None:
            keys = keys[:limit]
        return [key for key in keys if not self.cache.has(key, record=False)]

    def run(
        self,
        candidates: Iterable[str],
        limit: Optional[int] = None,
        force: bool = False,
    ) -> PreloadSummary:
        """
        Warm the cache for candidates.

        Never raises. Individual failures are recorded in the summary; the
        run ends early only when the breaker opens or a fetch is cancelled.

        Args:
            candidates: Keys worth preloading, most relevant first
            limit: Only consider the first `limit` candidates
            force: Close an open breaker and run anyway. If this run
                fails often enough the breaker opens again.
        """
        summary = PreloadSummary(forced=force)
        if self.state.disabled:
            if not force:
                logger.debug("Preloading disabled, skipping run")
                summary.refused = True
                return summary
            logger.info("Forcing preload run, re-enabling preloading")
            self.state.enable()

        keys = list(dict.fromkeys(candidates))
        if limit is not None:
            keys = keys[:limit]
        pending = self.pending_keys(keys)
        summary.skipped_cached = len(keys) - len(pending)
        if not pending:
            return summary

        started = time.monotonic()
        self.state.reset_run()
        batches = [
            pending[i:i + self.batch_size]
            for i in range(0, len(pending), self.batch_size)
        ]
        logger.info(f"Preloading {len(pending)} items in {len(batches)} batches")

        try:
            for batch_index, batch in enumerate(batches):
                if batch_index > 0:
                    self._sleep(self.batch_delay)
                for item_index, key in enumerate(batch):
                    if item_index > 0:
                        self._sleep(self.item_delay)
                    if not self._preload_one(key, summary):
                        return summary
        finally:
            summary.duration_seconds = time.monotonic() - started
            logger.info(
                f"Preload finished: {summary.succeeded}/{summary.attempted} succeeded"
                + (" (aborted, breaker open)" if summary.aborted else "")
            )
        return summary

    def _preload_one(self, key: str, summary: PreloadSummary) -> bool:
        """Fetch and store one key. Returns False when the run must stop."""
        if self.state.disabled:
            logger.info(f"Preloading disabled mid-run, stopping before {key}")
            summary.aborted = True
            return False
        summary.attempted += 1
        try:
            value = self._fetch(key, self.fetch_timeout)
        except FetchCancelledError:
            logger.info(f"Preload of {key} cancelled, ending run")
            summary.cancelled = True
            return False
        except Exception as e:
            summary.failed += 1
            summary.failures.append((key, str(e)))
            logger.warning(f"Failed to preload {key}: {e}")
            if self.state.record_failure():
                summary.aborted = True
                return False
            return True

        self.cache.set(key, value)
        self.state.record_success()
        summary.succeeded += 1
        return True

    # ------------------------------------------------------------------
    # Background worker
    # ------------------------------------------------------------------

    def submit(
        self,
        candidates: Iterable[str],
        limit: Optional[int] = None,
        force: bool = False,
    ) -> bool:
        """
        Queue a run for the background worker.

        Returns:
            False if the breaker is open or the queue is full
        """
        if self.state.disabled and not force:
            logger.debug("Preloading disabled, not queueing run")
            return False
        self._ensure_worker()
        try:
            self._queue.put_nowait((list(candidates), limit, force))
        except queue.Full:
            logger.warning("Preload queue full, dropping run")
            return False
        return True

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._work, name="cache-preload", daemon=True
                )
                self._worker.start()

    def _work(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                candidates, limit, force = job
                self.last_summary = self.run(candidates, limit=limit, force=force)
            except Exception as e:
                logger.exception(f"Preload worker run failed: {e}")
            finally:
                self._queue.task_done()

    def wait_idle(self) -> None:
        """Block until every queued run has finished."""
        self._queue.join()

    def shutdown(self) -> None:
        """Stop the background worker after the queued runs complete."""
        with self._worker_lock:
            worker = self._worker
            self._worker = None
        if worker is not None and worker.is_alive():
            self._queue.put(None)
            worker.join()
