"""Persistent tape/segment index kept in a SQLite database, one table per column family."""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Sequence

from .metrics import (
    inc_total_segments_written,
    inc_total_segments_written_batch,
    inc_total_tapes_written,
    inc_total_tapes_written_batch,
)
from .pubkey import PUBKEY_BYTES, Pubkey

log = logging.getLogger(__name__)

TAPE_STORE_PRIMARY_DB = "db_tapestore"
TAPE_STORE_SECONDARY_DB_MINE = "db_tapestore_read_mine"
TAPE_STORE_SECONDARY_DB_WEB = "db_tapestore_read_web"
TAPE_STORE_SLOTS_KEY_SIZE = 40
DB_FILENAME = "tapestore.sqlite3"
DEFAULT_MAX_SEGMENT_SIZE = 128
DEFAULT_REFRESH_INTERVAL = 15.0

_LAST_PROCESSED_SLOT_KEY = b"last_processed_slot"
_DRIFT_KEY = b"drift"
_U64 = struct.Struct(">Q")


class StoreError(Exception):
    """Base class for every failure reported by the tape store."""


class TapeNotFound(StoreError):
    def __init__(self, tape_number: int) -> None:
        self.tape_number = tape_number
        super().__init__(f"Tape not found: number {tape_number}")


class SegmentNotFound(StoreError):
    def __init__(self, tape_number: int, segment_number: int) -> None:
        self.tape_number = tape_number
        self.segment_number = segment_number
        super().__init__(
            f"Segment not found for tape number {tape_number}, segment {segment_number}"
        )


class TapeNotFoundForAddress(StoreError):
    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"Tape not found for address: {address}")


class SegmentNotFoundForAddress(StoreError):
    def __init__(self, address: str, segment_number: int) -> None:
        self.address = address
        self.segment_number = segment_number
        super().__init__(
            f"Segment not found for address {address}, segment {segment_number}"
        )


class HealthNotFound(StoreError):
    def __init__(self) -> None:
        super().__init__("Health column family not found")


class InvalidPubkey(StoreError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid pubkey: {reason}")


class SegmentSizeExceeded(StoreError):
    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Segment data exceeds maximum size of {limit} bytes")


class InvalidSegmentKey(StoreError):
    def __init__(self) -> None:
        super().__init__("Invalid segment key format")


class InvalidKeyValuePairLen(StoreError):
    def __init__(self) -> None:
        super().__init__("KeyValuesLenMismatch")


class ColumnFamily(str, Enum):
    TAPE_BY_NUMBER = "tape_by_number"
    TAPE_BY_ADDRESS = "tape_by_address"
    SEGMENTS = "segments"
    HEALTH = "health"


@dataclass(frozen=True)
class LocalStats:
    tapes: int
    segments: int
    size_bytes: int


def _u64(value: int) -> bytes:
    if not 0 <= value < 1 << 64:
        raise ValueError(f"value out of range for u64: {value}")
    return _U64.pack(value)


def _segment_key(address: Pubkey, segment_number: int) -> bytes:
    return address.to_bytes() + _u64(segment_number)


class TapeStore:
    """Index of tape numbers, tape addresses and packed segment data."""

    def __init__(self, path, max_segment_size: int = DEFAULT_MAX_SEGMENT_SIZE) -> None:
        directory = Path(path)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(directory / DB_FILENAME, check_same_thread=False)
            with conn:
                for cf in ColumnFamily:
                    conn.execute(
                        f'CREATE TABLE IF NOT EXISTS "{cf.value}" '
                        "(key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID"
                    )
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"cannot open store at {directory}: {exc}") from exc
        self._attach(directory, conn, max_segment_size, read_only=False)

    def _attach(
        self,
        directory: Path,
        conn: sqlite3.Connection,
        max_segment_size: int,
        read_only: bool,
        secondary_path: Path | None = None,
    ) -> None:
        self.path = directory
        self.db_file = directory / DB_FILENAME
        self.max_segment_size = max_segment_size
        self.read_only = read_only
        self.secondary_path = secondary_path
        self._conn: sqlite3.Connection | None = conn
        self._lock = threading.RLock()

    @classmethod
    def _open_existing(
        cls,
        path,
        max_segment_size: int,
        secondary_path: Path | None = None,
    ) -> "TapeStore":
        directory = Path(path)
        db_file = directory / DB_FILENAME
        if not db_file.is_file():
            raise StoreError(f"no store found at {directory}")
        uri = db_file.resolve().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open store at {directory}: {exc}") from exc
        store = cls.__new__(cls)
        store._attach(directory, conn, max_segment_size, True, secondary_path)
        return store

    @classmethod
    def open_read_only(cls, path) -> "TapeStore":
        """Open an existing store without write access."""
        return cls._open_existing(path, DEFAULT_MAX_SEGMENT_SIZE)

    @classmethod
    def open_secondary(cls, primary_path, secondary_path) -> "TapeStore":
        """Open a reader that follows a primary store another process writes to."""
        secondary = Path(secondary_path)
        try:
            secondary.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"IO error: {exc}") from exc
        return cls._open_existing(primary_path, DEFAULT_MAX_SEGMENT_SIZE, secondary)

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._conn is None:
                raise StoreError("store is closed")
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise StoreError(f"database error: {exc}") from exc

    def catch_up_with_primary(self) -> None:
        """Make the latest writes of the primary visible to this handle."""
        with self._db() as conn:
            if conn.in_transaction:
                conn.commit()
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "TapeStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get(self, conn: sqlite3.Connection, cf: ColumnFamily, key: bytes) -> bytes | None:
        row = conn.execute(
            f'SELECT value FROM "{cf.value}" WHERE key = ?', (key,)
        ).fetchone()
        return None if row is None else bytes(row[0])

    def update_health(self, last_processed_slot: int, drift: int) -> None:
        rows = [
            (_LAST_PROCESSED_SLOT_KEY, _u64(last_processed_slot)),
            (_DRIFT_KEY, _u64(drift)),
        ]
        with self._db() as conn, conn:
            conn.executemany(
                f'INSERT OR REPLACE INTO "{ColumnFamily.HEALTH.value}" VALUES (?, ?)', rows
            )

    def get_health(self) -> tuple[int, int]:
        """Return (last_processed_slot, drift)."""
        with self._db() as conn:
            slot = self._get(conn, ColumnFamily.HEALTH, _LAST_PROCESSED_SLOT_KEY)
            drift = self._get(conn, ColumnFamily.HEALTH, _DRIFT_KEY)
        if slot is None or drift is None:
            raise HealthNotFound()
        return _U64.unpack(slot)[0], _U64.unpack(drift)[0]

    def write_tape(self, tape_number: int, address: Pubkey) -> None:
        number_bytes = _u64(tape_number)
        address_bytes = address.to_bytes()
        with self._db() as conn, conn:
            conn.execute(
                f'INSERT OR REPLACE INTO "{ColumnFamily.TAPE_BY_NUMBER.value}" VALUES (?, ?)',
                (number_bytes, address_bytes),
            )
            conn.execute(
                f'INSERT OR REPLACE INTO "{ColumnFamily.TAPE_BY_ADDRESS.value}" VALUES (?, ?)',
                (address_bytes, number_bytes),
            )
        inc_total_tapes_written()

    def write_tapes_batch(
        self, tape_numbers: Sequence[int], addresses: Sequence[Pubkey]
    ) -> None:
        if len(tape_numbers) != len(addresses):
            raise InvalidKeyValuePairLen()
        pairs = [(_u64(n), a.to_bytes()) for n, a in zip(tape_numbers, addresses)]
        with self._db() as conn, conn:
            conn.executemany(
                f'INSERT OR REPLACE INTO "{ColumnFamily.TAPE_BY_NUMBER.value}" VALUES (?, ?)',
                pairs,
            )
            conn.executemany(
                f'INSERT OR REPLACE INTO "{ColumnFamily.TAPE_BY_ADDRESS.value}" VALUES (?, ?)',
                [(a, n) for n, a in pairs],
            )
        inc_total_tapes_written_batch(len(tape_numbers))

    def write_segment(self, tape_address: Pubkey, segment_number: int, data: bytes) -> None:
        data = bytes(data)
        if len(data) > self.max_segment_size:
            raise SegmentSizeExceeded(self.max_segment_size)
        key = _segment_key(tape_address, segment_number)
        with self._db() as conn, conn:
            conn.execute(
                f'INSERT OR REPLACE INTO "{ColumnFamily.SEGMENTS.value}" VALUES (?, ?)',
                (key, data),
            )
        inc_total_segments_written()

    def write_segments_batch(
        self,
        tape_addresses: Sequence[Pubkey],
        segment_numbers: Sequence[int],
        data_list: Sequence[bytes],
    ) -> None:
        blobs = [bytes(d) for d in data_list]
        if any(len(d) > self.max_segment_size for d in blobs):
            raise SegmentSizeExceeded(self.max_segment_size)
        if len(tape_addresses) != len(segment_numbers) or len(blobs) != len(segment_numbers):
            raise InvalidKeyValuePairLen()
        rows = [
            (_segment_key(address, number), blob)
            for address, number, blob in zip(tape_addresses, segment_numbers, blobs)
        ]
        with self._db() as conn, conn:
            conn.executemany(
                f'INSERT OR REPLACE INTO "{ColumnFamily.SEGMENTS.value}" VALUES (?, ?)', rows
            )
        inc_total_segments_written_batch(len(segment_numbers))

    def read_tape_number(self, address: Pubkey) -> int:
        with self._db() as conn:
            value = self._get(conn, ColumnFamily.TAPE_BY_ADDRESS, address.to_bytes())
        if value is None:
            raise TapeNotFoundForAddress(str(address))
        if len(value) != _U64.size:
            raise InvalidSegmentKey()
        return _U64.unpack(value)[0]

    def read_tape_address(self, tape_number: int) -> Pubkey:
        with self._db() as conn:
            value = self._get(conn, ColumnFamily.TAPE_BY_NUMBER, _u64(tape_number))
        if value is None:
            raise TapeNotFound(tape_number)
        try:
            return Pubkey(value)
        except ValueError as exc:
            raise InvalidPubkey(str(exc)) from exc

    def _prefix_rows(self, tape_address: Pubkey) -> list[tuple[bytes, bytes]]:
        with self._db() as conn:
            rows = conn.execute(
                f'SELECT key, value FROM "{ColumnFamily.SEGMENTS.value}" '
                "WHERE substr(key, 1, ?) = ? ORDER BY key",
                (PUBKEY_BYTES, tape_address.to_bytes()),
            ).fetchall()
        return [(bytes(k), bytes(v)) for k, v in rows]

    def read_segment_count(self, tape_address: Pubkey) -> int:
        return len(self._prefix_rows(tape_address))

    def read_tape_segments(self, tape_address: Pubkey) -> list[tuple[int, bytes]]:
        """Return (segment_number, data) pairs for a tape, ordered by segment number."""
        return [
            (_U64.unpack(key[PUBKEY_BYTES:])[0], value)
            for key, value in self._prefix_rows(tape_address)
            if len(key) == TAPE_STORE_SLOTS_KEY_SIZE
        ]

    def read_segment_by_address(self, tape_address: Pubkey, segment_number: int) -> bytes:
        with self._db() as conn:
            value = self._get(
                conn, ColumnFamily.SEGMENTS, _segment_key(tape_address, segment_number)
            )
        if value is None:
            raise SegmentNotFoundForAddress(str(tape_address), segment_number)
        return value

    def read_segment(self, tape_number: int, segment_number: int) -> bytes:
        address = self.read_tape_address(tape_number)
        with self._db() as conn:
            value = self._get(conn, ColumnFamily.SEGMENTS, _segment_key(address, segment_number))
        if value is None:
            raise SegmentNotFound(tape_number, segment_number)
        return value

    def _count(self, cf: ColumnFamily) -> int:
        with self._db() as conn:
            return conn.execute(f'SELECT COUNT(*) FROM "{cf.value}"').fetchone()[0]

    def _db_size(self) -> int:
        try:
            return sum(entry.stat().st_size for entry in self.path.iterdir() if entry.is_file())
        except OSError as exc:
            raise StoreError(f"IO error: {exc}") from exc

    def read_local_stats(self) -> LocalStats:
        return LocalStats(
            tapes=self._count(ColumnFamily.TAPE_BY_NUMBER),
            segments=self._count(ColumnFamily.SEGMENTS),
            size_bytes=self._db_size(),
        )


def run_refresh_store(
    store: TapeStore, interval: float = DEFAULT_REFRESH_INTERVAL
) -> threading.Event:
    """Catch the store up with its primary every ``interval`` seconds in a background thread.

    Setting the returned event stops the thread; the thread sets it itself if a refresh fails.
    """
    stop = threading.Event()

    def _loop() -> None:
        while not stop.is_set():
            try:
                store.catch_up_with_primary()
            except StoreError as exc:
                log.error("store refresh failed: %s", exc)
                stop.set()
                return
            stop.wait(interval)

    threading.Thread(target=_loop, name="store-refresh", daemon=True).start()
    return stop


def _base(base_dir) -> Path:
    return Path.cwd() if base_dir is None else Path(base_dir)


def primary(base_dir=None) -> TapeStore:
    return TapeStore(_base(base_dir) / TAPE_STORE_PRIMARY_DB)


def secondary_mine(base_dir=None) -> TapeStore:
    base = _base(base_dir)
    return TapeStore.open_secondary(
        base / TAPE_STORE_PRIMARY_DB, base / TAPE_STORE_SECONDARY_DB_MINE
    )


def secondary_web(base_dir=None) -> TapeStore:
    base = _base(base_dir)
    return TapeStore.open_secondary(
        base / TAPE_STORE_PRIMARY_DB, base / TAPE_STORE_SECONDARY_DB_WEB
    )


def read_only(base_dir=None) -> TapeStore:
    return TapeStore.open_read_only(_base(base_dir) / TAPE_STORE_PRIMARY_DB)