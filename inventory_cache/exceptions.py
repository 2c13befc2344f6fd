"""
Exceptions raised by the inventory cache, fetch client and preloader.

Circuit-open refusals are not represented here: a preload run made while
preloading is disabled is a no-op reported in its summary.
"""
from typing import Optional


class InventoryCacheError(Exception):
    """Base exception for the inventory cache package."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key


class FetchError(InventoryCacheError):
    """Fetching an item's holders from the backing service failed."""

    retryable = True


class FetchTimeoutError(FetchError, TimeoutError):
    """No response arrived before the request deadline."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Request for {key!r} timed out after {timeout}s", key=key)
        self.timeout = timeout


class NetworkError(FetchError):
    """Transport failure or non-success HTTP status."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, key=key)
        self.status_code = status_code
        # Client errors will not fix themselves on retry
        if status_code is not None and 400 <= status_code < 500 and status_code != 429:
            self.retryable = False


class InvalidResponseError(NetworkError):
    """The backing service answered with a body we could not parse."""

    retryable = False


class FetchCancelledError(InventoryCacheError):
    """The caller cancelled the request before it completed."""


class PersistenceError(InventoryCacheError):
    """Reading or writing the durable cache blob failed."""
