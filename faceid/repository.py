"""
Auth Repository Module

Key-value persistence for the Face ID gate. Everything the gate stores
lives under four keys:

    face_id_descriptor   - enrolled landmark points (JSON list)
    face_id_enrolled_at  - ISO timestamp of enrollment
    face_id_enrolled     - "true" flag, kept consistent with the descriptor
    face_id_attempts     - bounded attempt ledger (JSON list)

Values are strings. Multi-key writes and deletes go through set_many() and
clear(), which apply all keys together.

Backends:
    - InMemoryAuthRepository: process-local dict (tests, ephemeral hosts)
    - SQLiteAuthRepository: single-table SQLite store

Note: values are stored unencrypted and unauthenticated.

Usage:
    from faceid.repository import SQLiteAuthRepository, DESCRIPTOR_KEY

    repo = SQLiteAuthRepository("storage/faceid.sqlite")
    repo.set(DESCRIPTOR_KEY, "[[1.0, 2.0], ...]")
    value = repo.get(DESCRIPTOR_KEY)
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)


DESCRIPTOR_KEY = "face_id_descriptor"
ENROLLED_AT_KEY = "face_id_enrolled_at"
ENROLLED_FLAG_KEY = "face_id_enrolled"
ATTEMPTS_KEY = "face_id_attempts"

ALL_KEYS = (DESCRIPTOR_KEY, ENROLLED_AT_KEY, ENROLLED_FLAG_KEY, ATTEMPTS_KEY)


class AuthRepository(ABC):
    """Injected storage for enrollment and attempt state."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def set_many(self, values: Mapping[str, str]) -> None:
        """Store several values in one atomic write."""

    @abstractmethod
    def clear(self, *keys: str) -> None:
        """Remove the given keys (all gate keys if none given) atomically."""

    def close(self) -> None:
        """Release backend resources."""


class InMemoryAuthRepository(AuthRepository):
    """Dict-backed repository."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def set_many(self, values: Mapping[str, str]) -> None:
        with self._lock:
            self._data.update(values)

    def clear(self, *keys: str) -> None:
        with self._lock:
            for key in keys or ALL_KEYS:
                self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        """Copy of the stored values."""
        with self._lock:
            return dict(self._data)


class SQLiteAuthRepository(AuthRepository):
    """
    SQLite-backed repository.

    One table, auth_state(key PRIMARY KEY, value, updated_at). The
    connection is shared across threads (the HTTP layer may call from a
    worker thread), so every statement runs under a lock.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

        logger.info(f"SQLiteAuthRepository initialized: db={self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or lazily create the SQLite connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auth_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()
        logger.debug("Database schema initialized")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            cursor = self._get_connection().execute(
                "SELECT value FROM auth_state WHERE key = ?", (key,)
            )
            row = cursor.fetchone()
        return None if row is None else row["value"]

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, str]) -> None:
        with self._lock:
            conn = self._get_connection()
            with conn:
                conn.executemany(
                    """
                    INSERT INTO auth_state (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    list(values.items()),
                )
        logger.debug(f"Stored keys: {sorted(values)}")

    def clear(self, *keys: str) -> None:
        keys = keys or ALL_KEYS
        with self._lock:
            conn = self._get_connection()
            with conn:
                conn.executemany(
                    "DELETE FROM auth_state WHERE key = ?", [(k,) for k in keys]
                )
        logger.debug(f"Cleared keys: {sorted(keys)}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug("Database connection closed")

    def __del__(self):
        self.close()


def create_repository(db_path: Optional[str] = None) -> AuthRepository:
    """
    Build the repository described by the "storage" config section.

    Args:
        db_path: SQLite file path. ":memory:" selects the in-memory backend.
                 Relative paths are resolved against the project root.
    """
    if db_path is None:
        from faceid.config import get_storage_config

        db_path = get_storage_config()["db_path"]

    if db_path == ":memory:":
        return InMemoryAuthRepository()

    path = Path(db_path)
    if not path.is_absolute():
        from faceid.config import get_project_root

        path = get_project_root() / path

    return SQLiteAuthRepository(str(path))
