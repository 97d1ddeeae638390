"""
Key-value storage for ledger records, sessions and registry data.

Components depend only on the ``KeyValueStore`` protocol. Values are JSON
objects; every multi-step read-modify-write goes through ``transaction()``
so a check and the write that depends on it commit together.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, ContextManager, Iterator, Optional, Protocol

from .storage import ensure_private_dir, ensure_private_file


Value = dict[str, Any]
Mutation = Callable[[Optional[Value]], Optional[Value]]


class KeyValueTransaction(Protocol):
    def get(self, key: str) -> Optional[Value]: ...

    def set(self, key: str, value: Value, ttl_seconds: Optional[float] = None) -> None: ...

    def delete(self, key: str) -> bool: ...

    def scan(self, prefix: str) -> list[tuple[str, Value]]: ...


class KeyValueStore(Protocol):
    def transaction(self) -> ContextManager[KeyValueTransaction]: ...

    def get(self, key: str) -> Optional[Value]: ...

    def set(self, key: str, value: Value, ttl_seconds: Optional[float] = None) -> None: ...

    def delete(self, key: str) -> bool: ...

    def pop(self, key: str) -> Optional[Value]: ...

    def update(self, key: str, mutate: Mutation, ttl_seconds: Optional[float] = None) -> Optional[Value]: ...

    def scan(self, prefix: str) -> list[tuple[str, Value]]: ...


class _StoreOperations:
    """Single-key operations expressed as one-shot transactions."""

    def transaction(self):  # pragma: no cover - overridden
        raise NotImplementedError

    def get(self, key: str) -> Optional[Value]:
        with self.transaction() as txn:
            return txn.get(key)

    def set(self, key: str, value: Value, ttl_seconds: Optional[float] = None) -> None:
        with self.transaction() as txn:
            txn.set(key, value, ttl_seconds)

    def delete(self, key: str) -> bool:
        with self.transaction() as txn:
            return txn.delete(key)

    def pop(self, key: str) -> Optional[Value]:
        """Atomically read and remove ``key``. At most one caller gets the value."""
        with self.transaction() as txn:
            value = txn.get(key)
            if value is not None:
                txn.delete(key)
            return value

    def update(self, key: str, mutate: Mutation, ttl_seconds: Optional[float] = None) -> Optional[Value]:
        """Atomic read-modify-write.

        ``mutate`` receives the current value (``None`` when absent) and
        returns the value to store, or ``None`` to leave the key untouched.
        Exceptions raised by ``mutate`` abort without writing.
        """
        with self.transaction() as txn:
            new_value = mutate(txn.get(key))
            if new_value is not None:
                txn.set(key, new_value, ttl_seconds)
            return new_value

    def scan(self, prefix: str) -> list[tuple[str, Value]]:
        with self.transaction() as txn:
            return txn.scan(prefix)


# ── In-memory ─────────────────────────────────────────────────────


class _MemoryTransaction:
    def __init__(self, store: "InMemoryKeyValueStore"):
        self._store = store
        self._writes: dict[str, Optional[tuple[str, Optional[float]]]] = {}

    def _live(self, key: str) -> Optional[tuple[str, Optional[float]]]:
        if key in self._writes:
            entry = self._writes[key]
        else:
            entry = self._store._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._store._clock():
            return None
        return entry

    def get(self, key: str) -> Optional[Value]:
        entry = self._live(key)
        return json.loads(entry[0]) if entry is not None else None

    def set(self, key: str, value: Value, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._store._clock() + ttl_seconds if ttl_seconds is not None else None
        if ttl_seconds is None:
            current = self._live(key)
            if current is not None:
                expires_at = current[1]
        self._writes[key] = (json.dumps(value), expires_at)

    def delete(self, key: str) -> bool:
        existed = self._live(key) is not None
        self._writes[key] = None
        return existed

    def scan(self, prefix: str) -> list[tuple[str, Value]]:
        keys = set(self._store._data) | set(self._writes)
        result = []
        for key in sorted(k for k in keys if k.startswith(prefix)):
            value = self.get(key)
            if value is not None:
                result.append((key, value))
        return result

    def _commit(self) -> None:
        for key, entry in self._writes.items():
            if entry is None:
                self._store._data.pop(key, None)
            else:
                self._store._data[key] = entry


class InMemoryKeyValueStore(_StoreOperations):
    """
    Process-local store for development and tests.

    A single re-entrant lock serialises transactions; writes are staged and
    only applied when the transaction body completes without raising.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()
        self._clock = clock

    @contextmanager
    def transaction(self) -> Iterator[_MemoryTransaction]:
        with self._lock:
            txn = _MemoryTransaction(self)
            yield txn
            txn._commit()


# ── SQLite ────────────────────────────────────────────────────────


class _SQLiteTransaction:
    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], float]):
        self._conn = conn
        self._clock = clock

    def get(self, key: str) -> Optional[Value]:
        row = self._conn.execute(
            "SELECT value FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (key, self._clock()),
        ).fetchone()
        return json.loads(row["value"]) if row is not None else None

    def set(self, key: str, value: Value, ttl_seconds: Optional[float] = None) -> None:
        payload = json.dumps(value)
        if ttl_seconds is None:
            self._conn.execute(
                """
                INSERT INTO kv (key, value, expires_at) VALUES (?, ?, NULL)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = CASE
                        WHEN kv.expires_at IS NOT NULL AND kv.expires_at <= ? THEN NULL
                        ELSE kv.expires_at
                    END
                """,
                (key, payload, self._clock()),
            )
        else:
            self._conn.execute(
                """
                INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, payload, self._clock() + ttl_seconds),
            )

    def delete(self, key: str) -> bool:
        live = self.get(key) is not None
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        return live

    def scan(self, prefix: str) -> list[tuple[str, Value]]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._conn.execute(
            """
            SELECT key, value FROM kv
            WHERE key LIKE ? ESCAPE '\\' AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY key ASC
            """,
            (escaped + "%", self._clock()),
        ).fetchall()
        return [(row["key"], json.loads(row["value"])) for row in rows]


class SQLiteKeyValueStore(_StoreOperations):
    """
    Durable store backed by a single SQLite table.

    Every transaction runs under BEGIN IMMEDIATE, so check-then-write
    sequences are atomic across threads and processes.
    """

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self.path = path
        self._clock = clock
        ensure_private_dir(self.path.parent)
        self._init_db()
        ensure_private_file(self.path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
                """
            )
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[_SQLiteTransaction]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield _SQLiteTransaction(conn, self._clock)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def purge_expired(self) -> int:
        """Physically delete entries whose TTL has lapsed."""
        conn = self._connect()
        try:
            cur = conn.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
            return cur.rowcount
        finally:
            conn.close()


class KeyedLocks:
    """Per-key mutual exclusion for operations on the same entity."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]
