"""
Storage Backend Module

Key-value store collaborator for the settlement service: opaque byte blobs
keyed by string. Provides an in-memory implementation (testing) and SQLite
(persistence). Durability and replication are the store's concern; the
settlement engine only relies on single-key atomic writes, optimistic
compare-and-set and, where advertised, multi-key atomic commits.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union
import sqlite3
import threading
from pathlib import Path
from contextlib import contextmanager


class KeyValueStore(ABC):
    """Abstract interface for key-value store backends"""

    # True when commit_many() applies several keys atomically
    supports_multi_key: bool = False

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the value stored under key, or None"""
        pass

    @abstractmethod
    def put(self, key: str, value: bytes) -> None:
        """Store value under key"""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete key; returns False if it did not exist"""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with prefix, sorted"""
        pass

    @abstractmethod
    def compare_and_set(self, key: str, expected: Optional[bytes], value: bytes) -> bool:
        """
        Write value only if the current value equals expected.

        expected=None means the key must not exist yet.
        Returns True when the write happened.
        """
        pass

    def commit_many(
        self,
        expected: Dict[str, Optional[bytes]],
        updates: Dict[str, bytes]
    ) -> bool:
        """
        Atomically check every expected value and apply every update.

        Only available when supports_multi_key is True.
        """
        raise NotImplementedError(f"{type(self).__name__} has no multi-key commit")

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    @abstractmethod
    def close(self) -> None:
        """Close store connection"""
        pass


class InMemoryStore(KeyValueStore):
    """In-memory store for testing; multi_key=False models a single-key store"""

    def __init__(self, multi_key: bool = True):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.RLock()
        self.supports_multi_key = multi_key

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError("Store values must be bytes")
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._data:
                del self._data[key]
                return True
            return False

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def compare_and_set(self, key: str, expected: Optional[bytes], value: bytes) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            self.put(key, value)
            return True

    def commit_many(
        self,
        expected: Dict[str, Optional[bytes]],
        updates: Dict[str, bytes]
    ) -> bool:
        if not self.supports_multi_key:
            return super().commit_many(expected, updates)
        with self._lock:
            for key, value in expected.items():
                if self._data.get(key) != value:
                    return False
            for key, value in updates.items():
                self.put(key, value)
            return True

    def close(self) -> None:
        """Close store (no-op for in-memory)"""
        pass

    def snapshot(self) -> Dict[str, bytes]:
        """Copy of all data for debugging/inspection"""
        with self._lock:
            return dict(self._data)


class SQLiteStore(KeyValueStore):
    """SQLite key-value store for persistence"""

    supports_multi_key = True

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; explicit BEGIN IMMEDIATE for multi-statement writes
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._lock = threading.RLock()

        with self._lock:
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL
                )
            """)

    @contextmanager
    def atomic(self):
        """Run the enclosed statements in one write transaction"""
        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE")
            try:
                yield self._connection
                self._connection.execute("COMMIT")
            except Exception:
                self._connection.execute("ROLLBACK")
                raise

    def _read(self, key: str) -> Optional[bytes]:
        row = self._connection.execute(
            "SELECT value FROM kv_store WHERE key = ?", (key,)
        ).fetchone()
        return bytes(row[0]) if row else None

    def _write(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError("Store values must be bytes")
        self._connection.execute(
            "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
            (key, sqlite3.Binary(bytes(value)))
        )

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._read(key)

    def put(self, key: str, value: bytes) -> None:
        with self.atomic():
            self._write(key, value)

    def delete(self, key: str) -> bool:
        with self.atomic() as conn:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            cursor = self._connection.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix)
            )
            return [row[0] for row in cursor.fetchall()]

    def compare_and_set(self, key: str, expected: Optional[bytes], value: bytes) -> bool:
        return self.commit_many({key: expected}, {key: value})

    def commit_many(
        self,
        expected: Dict[str, Optional[bytes]],
        updates: Dict[str, bytes]
    ) -> bool:
        with self.atomic():
            for key, value in expected.items():
                if self._read(key) != value:
                    return False
            for key, value in updates.items():
                self._write(key, value)
            return True

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_store(backend: str = "memory", database_path: str = "nostrovostro.db") -> KeyValueStore:
    """Build the store named by configuration"""
    if backend == "memory":
        return InMemoryStore()
    if backend == "sqlite":
        return SQLiteStore(database_path)
    raise ValueError(f"Unknown store backend: {backend}")
