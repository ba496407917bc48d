"""
Key/Value Storage Layer
=======================

Persistence for model configurations and the default model id.
Values are strings (the registry stores JSON); SQLite is the durable
backend, an in-memory map serves tests and ephemeral hosts.
"""

from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from .settings import CONFIG_DIR


def get_storage_path() -> Path:
    """Get the storage directory path, creating it if needed."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    return CONFIG_DIR


class KeyValueStorage(ABC):
    """Caller-supplied persistence used by the configuration registry."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""


class MemoryKeyValueStorage(KeyValueStorage):
    """Dictionary-backed storage."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class SQLiteKeyValueStorage(KeyValueStorage):
    """SQLite-based key/value storage."""

    def __init__(self, db_path: Path | None = None):
        """Initialize storage with optional custom database path."""
        if db_path is None:
            db_path = get_storage_path() / "settings.db"
        self.db_path = db_path
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def get(self, key: str) -> str | None:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()
            return str(row[0]) if row else None

    def set(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, datetime.now().isoformat()),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> list[str]:
        """List stored keys, most recently updated first."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key FROM settings ORDER BY updated_at DESC")
            return [str(row[0]) for row in cursor.fetchall()]
