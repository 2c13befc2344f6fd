"""
HTTP client for the dashboard's item inventory endpoint.

One request per item name, bounded by a deadline and cancellable by the
caller. Errors are mapped onto the package's exception types so callers
never see raw requests exceptions.

requests only bounds the connect and each socket read, so a server that
drips its body can hold a read open indefinitely. The exchange therefore
runs on a worker thread and the caller waits for it no longer than the
deadline; on expiry the response is closed and FetchTimeoutError raised.
"""
import json
import time
import socket
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional, Tuple

import requests

from inventory_cache.exceptions import (
    FetchCancelledError,
    FetchTimeoutError,
    InvalidResponseError,
    NetworkError,
)
from inventory_cache.models import ItemInventory

logger = logging.getLogger("fetch_client")

INVENTORY_ENDPOINT = "api/inventory/item"
DEFAULT_TIMEOUT = 12.0
DEFAULT_MAX_WORKERS = 8
_CHUNK_SIZE = 1024
_POLL_INTERVAL = 0.05


class CancelToken:
    """
    Caller-held handle for aborting an in-flight fetch.

    cancel() closes the attached response, which drops the underlying
    connection instead of letting the transfer finish in the background.
    """

    def __init__(self):
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        self._close_response()

    def attach(self, response: requests.Response) -> None:
        with self._lock:
            self._response = response
        if self.cancelled:
            _abort(response)

    def detach(self) -> None:
        with self._lock:
            self._response = None

    def _close_response(self) -> None:
        with self._lock:
            response = self._response
        if response is not None:
            _abort(response)


def _abort(response: requests.Response) -> None:
    """
    Drop the connection under a streaming response.

    A read blocked in another thread holds the body buffer's lock, so
    close() alone would wait for it; shutting the socket down first wakes
    the reader immediately.
    """
    connection = getattr(response.raw, "connection", None)
    sock = getattr(connection, "sock", None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket already closed: {e}")
    response.close()


class InventoryFetchClient:
    """
    Fetches the holders of one item from the backing service.

    Usage:
        client = InventoryFetchClient("http://localhost:5001")
        inventory = client.fetch("Ancient Gear", timeout=12)
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_timeout = default_timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="inventory-fetch"
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}/{INVENTORY_ENDPOINT}"

    def fetch(
        self,
        item_name: str,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> ItemInventory:
        """
        Fetch who holds item_name.

        Args:
            item_name: Item to look up
            timeout: Deadline in seconds for the whole exchange
            cancel_token: Lets another thread abort the request

        Returns:
            Holders ordered by quantity descending (possibly empty)

        Raises:
            FetchTimeoutError: No complete response within the deadline
            NetworkError: Transport failure or non-2xx status
            InvalidResponseError: Body was not a list of holders
            FetchCancelledError: cancel_token was cancelled
        """
        timeout = self.default_timeout if timeout is None else timeout
        token = cancel_token or CancelToken()
        if token.cancelled:
            raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name)

        started = time.monotonic()
        deadline = started + timeout
        future = self._executor.submit(self._exchange, item_name, timeout, deadline, token)
        status_code, body = self._wait(future, item_name, timeout, deadline, token)

        try:
            inventory = ItemInventory.from_response(item_name, _parse_json(body))
        except ValueError as e:
            raise InvalidResponseError(
                f"Malformed inventory response for {item_name!r}: {e}",
                key=item_name,
                status_code=status_code,
            ) from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.debug(f"Fetched {item_name}: {len(inventory.holders)} holders in {elapsed_ms}ms")
        return inventory

    def _wait(
        self,
        future: Future,
        item_name: str,
        timeout: float,
        deadline: float,
        token: CancelToken,
    ) -> Tuple[int, bytes]:
        """Block until the exchange finishes, the deadline passes or the token is cancelled."""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                token._close_response()
                logger.warning(f"Fetch for {item_name} exceeded {timeout}s, connection closed")
                raise FetchTimeoutError(item_name, timeout)
            try:
                return future.result(timeout=min(remaining, _POLL_INTERVAL))
            except FutureTimeout:
                # FetchTimeoutError from the worker is also a TimeoutError
                if future.done():
                    raise
                if token.cancelled:
                    future.cancel()
                    raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name)

    def _exchange(
        self,
        item_name: str,
        timeout: float,
        deadline: float,
        token: CancelToken,
    ) -> Tuple[int, bytes]:
        """Send the request and read the body; runs on a worker thread."""
        if token.cancelled:
            raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name)
        if time.monotonic() > deadline:
            raise FetchTimeoutError(item_name, timeout)
        try:
            response = self._session.post(
                self.url,
                json={"itemName": item_name},
                timeout=(timeout, timeout),
                stream=True,
            )
        except requests.exceptions.Timeout as e:
            raise FetchTimeoutError(item_name, timeout) from e
        except requests.exceptions.RequestException as e:
            if token.cancelled:
                raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name) from e
            raise NetworkError(f"Request for {item_name!r} failed: {e}", key=item_name) from e

        token.attach(response)
        try:
            if token.cancelled:
                raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name)
            if time.monotonic() > deadline:
                raise FetchTimeoutError(item_name, timeout)
            if not response.ok:
                raise NetworkError(
                    f"HTTP {response.status_code}: {response.reason} for {item_name!r}",
                    key=item_name,
                    status_code=response.status_code,
                )
            body = self._read_body(response, item_name, timeout, deadline, token)
        finally:
            token.detach()
            response.close()
        return response.status_code, body

    def _read_body(
        self,
        response: requests.Response,
        item_name: str,
        timeout: float,
        deadline: float,
        token: CancelToken,
    ) -> bytes:
        """Read the body in chunks, stopping once cancelled or past the deadline."""
        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                if token.cancelled:
                    raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name)
                if time.monotonic() > deadline:
                    raise FetchTimeoutError(item_name, timeout)
                chunks.append(chunk)
        except (FetchCancelledError, FetchTimeoutError):
            raise
        except requests.exceptions.Timeout as e:
            raise FetchTimeoutError(item_name, timeout) from e
        except requests.exceptions.RequestException as e:
            if token.cancelled:
                raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name) from e
            raise NetworkError(f"Reading response for {item_name!r} failed: {e}", key=item_name) from e
        except (OSError, ValueError, AttributeError) as e:
            # Reading a response closed underneath us by cancel()
            if not token.cancelled:
                raise
            raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name) from e
        if token.cancelled:
            raise FetchCancelledError(f"Fetch for {item_name!r} cancelled", key=item_name)
        return b"".join(chunks)

    def close(self) -> None:
        """Stop the fetch workers and release pooled connections."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._session.close()


def _parse_json(body: bytes):
    if not body.strip():
        raise ValueError("empty body")
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"invalid JSON ({e})") from e
