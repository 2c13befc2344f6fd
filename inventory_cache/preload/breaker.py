"""
Circuit breaker guarding background preloading.

Counts failures within a preload run and disables preloading once the
threshold is reached. Only an explicit enable() turns it back on; there is
no timed recovery.
"""
import time
import logging
import threading
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger("preload.breaker")

DEFAULT_FAILURE_THRESHOLD = 3


class BreakerState(Enum):
    """Whether preloading may run."""
    CLOSED = "closed"  # Preloading enabled
    OPEN = "open"      # Preloading disabled


@dataclass
class PreloadState:
    """
    Process-wide preload switch and failure counter.

    Shared between the scheduler and the admin surface, so every mutation
    happens under the lock.
    """
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    disabled: bool = False
    consecutive_failures: int = 0
    trips: int = 0
    last_failure_at: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

    @property
    def state(self) -> BreakerState:
        return BreakerState.OPEN if self.disabled else BreakerState.CLOSED

    def reset_run(self) -> None:
        """Start a new run: failures from earlier runs do not carry over."""
        with self._lock:
            self.consecutive_failures = 0

    def record_success(self) -> None:
        with self._lock:
            self.consecutive_failures = 0

    def record_failure(self) -> bool:
        """
        Count one preload failure.

        Returns:
            True if the threshold has been reached and the run must stop
        """
        with self._lock:
            self.consecutive_failures += 1
            self.last_failure_at = time.time()
            if self.consecutive_failures < self.failure_threshold:
                return False
            if not self.disabled:
                self.disabled = True
                self.trips += 1
            failures = self.consecutive_failures
        logger.warning(
            f"Preloading disabled after {failures} consecutive failures "
            f"(threshold {self.failure_threshold})"
        )
        return True

    def enable(self) -> None:
        """Administrative re-enable."""
        with self._lock:
            self.disabled = False
            self.consecutive_failures = 0
        logger.info("Preloading enabled")

    def disable(self) -> None:
        with self._lock:
            self.disabled = True
        logger.info("Preloading disabled")

    def status(self) -> Dict[str, Any]:
        """Get breaker status for the admin surface."""
        with self._lock:
            return {
                "disabled": self.disabled,
                "status": "Disabled" if self.disabled else "Enabled",
                "state": self.state.value,
                "consecutiveFailures": self.consecutive_failures,
                "failureThreshold": self.failure_threshold,
                "trips": self.trips,
            }
