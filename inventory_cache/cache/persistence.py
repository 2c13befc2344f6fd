"""
Durable blob storage for the inventory cache.

The cache serializes itself into named text blobs. SQLiteBlobStore keeps
them in a single-table database; MemoryBlobStore is for tests and for
running with persistence turned off.
"""
import sqlite3
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, Optional
from contextlib import contextmanager

from ..exceptions import PersistenceError

logger = logging.getLogger("cache.persistence")


SCHEMA = """
CREATE TABLE IF NOT EXISTS blobs (
    name TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class BlobStore:
    """Named text blobs. Implementations raise PersistenceError on I/O failure."""

    max_blob_bytes: Optional[int] = None

    def read(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def write(self, name: str, payload: str) -> None:
        raise NotImplementedError

    def delete(self, name: str) -> None:
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    """In-process blob store."""

    def __init__(self, max_blob_bytes: Optional[int] = None):
        self.max_blob_bytes = max_blob_bytes
        self._blobs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def read(self, name: str) -> Optional[str]:
        with self._lock:
            return self._blobs.get(name)

    def write(self, name: str, payload: str) -> None:
        _check_size(name, payload, self.max_blob_bytes)
        with self._lock:
            self._blobs[name] = payload

    def delete(self, name: str) -> None:
        with self._lock:
            self._blobs.pop(name, None)


class SQLiteBlobStore(BlobStore):
    """
    SQLite-backed blob store.

    Each write is its own transaction. Payloads larger than max_blob_bytes
    are rejected the way a browser rejects writes past its storage quota.
    """

    def __init__(self, db_path: Path, max_blob_bytes: Optional[int] = None):
        self.db_path = Path(db_path)
        self.max_blob_bytes = max_blob_bytes
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"Cannot open cache database {self.db_path}: {e}") from e

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def read(self, name: str) -> Optional[str]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT payload FROM blobs WHERE name = ?", (name,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read blob {name}: {e}", key=name) from e
        return row[0] if row else None

    def write(self, name: str, payload: str) -> None:
        _check_size(name, payload, self.max_blob_bytes)
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO blobs (name, payload, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at = excluded.updated_at
                    """,
                    (name, payload, datetime.now(timezone.utc).isoformat()),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to write blob {name}: {e}", key=name) from e

    def delete(self, name: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM blobs WHERE name = ?", (name,))
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to delete blob {name}: {e}", key=name) from e


def _check_size(name: str, payload: str, max_bytes: Optional[int]) -> None:
    if max_bytes is None:
        return
    size = len(payload.encode("utf-8"))
    if size > max_bytes:
        raise PersistenceError(
            f"Blob {name} is {size} bytes, over the {max_bytes} byte quota",
            key=name,
        )
