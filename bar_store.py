import logging
import os
import sqlite3
import struct
import threading
from typing import Iterator, Optional, Tuple

from ohlcv import LoaderError, MinuteBar, serialize_bar, deserialize_bar

# Reserved key holding the newest persisted minute. 16 bytes long, so it can
# never equal an 8-byte timestamp key.
WATERMARK_KEY = b"latest_timestamp"

# Rows fetched per page by iterate()
ITER_PAGE_SIZE = 256


class StoreError(LoaderError):
    """A get/put/watermark/flush operation on the bar store failed."""


def int64_to_bytes(ts: int) -> bytes:
    if ts <= 0:
        raise ValueError(f"timestamp must be positive, got {ts}")
    return struct.pack(">q", ts)


def bytes_to_int64(b: bytes) -> int:
    return struct.unpack(">q", b)[0]


class BarStore:
    """Durable key -> value map of minute bars backed by a single SQLite file.

    Keys are 8-byte big-endian minute timestamps, values are JSON encoded
    MinuteBar records. Writes are buffered in the open transaction until
    flush(); discard() drops whatever has not been flushed yet. One
    connection is shared by all threads and serialised with a lock.
    """

    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger("minuteloader")
        parent = os.path.dirname(os.path.abspath(path))
        os.makedirs(parent, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS bars (key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID"
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"failed to open store {path}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --------------------------
    # Point access
    # --------------------------

    def _get_raw(self, key: bytes) -> Optional[bytes]:
        with self._lock:
            try:
                row = self._conn.execute("SELECT value FROM bars WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"failed to read key {key!r}: {e}") from e
        return bytes(row[0]) if row else None

    def _put_raw(self, key: bytes, value: bytes) -> None:
        with self._lock:
            try:
                self._conn.execute("INSERT OR REPLACE INTO bars (key, value) VALUES (?, ?)", (key, value))
            except sqlite3.Error as e:
                raise StoreError(f"failed to write key {key!r}: {e}") from e

    def get(self, timestamp_ms: int) -> Optional[MinuteBar]:
        value = self._get_raw(int64_to_bytes(timestamp_ms))
        if value is None:
            return None
        try:
            return deserialize_bar(value)
        except ValueError as e:
            raise StoreError(f"corrupt record at {timestamp_ms}: {e}") from e

    def put(self, timestamp_ms: int, bar: MinuteBar) -> None:
        self._put_raw(int64_to_bytes(timestamp_ms), serialize_bar(bar))

    def get_watermark(self) -> Optional[int]:
        value = self._get_raw(WATERMARK_KEY)
        if value is None:
            return None
        if len(value) != 8:
            raise StoreError(f"watermark record has {len(value)} bytes, expected 8")
        return bytes_to_int64(value)

    def set_watermark(self, timestamp_ms: int) -> None:
        self._put_raw(WATERMARK_KEY, int64_to_bytes(timestamp_ms))

    # --------------------------
    # Durability
    # --------------------------

    def flush(self) -> None:
        with self._lock:
            try:
                self._conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"failed to sync store: {e}") from e

    def discard(self) -> None:
        with self._lock:
            try:
                self._conn.rollback()
            except sqlite3.Error as e:
                raise StoreError(f"failed to discard pending writes: {e}") from e

    # --------------------------
    # Iteration
    # --------------------------

    def iterate(self) -> Iterator[Tuple[bytes, bytes]]:
        """Lazily yield every (key, value) pair in key order, the watermark included.
        Each call starts a fresh scan; rows are paged so the lock is never held
        across a yield.
        """
        last: Optional[bytes] = None
        while True:
            with self._lock:
                try:
                    if last is None:
                        rows = self._conn.execute(
                            "SELECT key, value FROM bars ORDER BY key LIMIT ?", (ITER_PAGE_SIZE,)
                        ).fetchall()
                    else:
                        rows = self._conn.execute(
                            "SELECT key, value FROM bars WHERE key > ? ORDER BY key LIMIT ?",
                            (last, ITER_PAGE_SIZE),
                        ).fetchall()
                except sqlite3.Error as e:
                    raise StoreError(f"failed to iterate store: {e}") from e
            if not rows:
                return
            for key, value in rows:
                yield bytes(key), bytes(value)
            last = bytes(rows[-1][0])

    def is_empty(self) -> bool:
        return next(self.iterate(), None) is None

    def iter_minute_keys(self) -> Iterator[int]:
        """Timestamps of all stored bars, ascending (big-endian keys sort numerically)."""
        for key, _ in self.iterate():
            if len(key) == 8:
                yield bytes_to_int64(key)
