"""
Database connection management.

Provides the key-value persistence layer both stores write their
envelopes through, backed by SQLite or by memory.
"""

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol

DEFAULT_DB_PATH = "prompt_ledger.db"


class KeyValueStore(Protocol):
    """Persistence boundary consumed by the stores."""

    def load(self, key: str) -> Optional[bytes]:
        ...

    def save(self, key: str, payload: bytes) -> None:
        ...


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path))
    return conn


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger_state table if it doesn't exist.

    Each row holds the latest serialized envelope for one key.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ledger_state (
                key TEXT PRIMARY KEY,
                payload BLOB NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class SQLiteKeyValueStore:
    """Key-value store persisting payloads into a SQLite file.

    A connection is opened per call so saves can run on a writer thread.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store, creating the schema when missing.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def load(self, key: str) -> Optional[bytes]:
        """Return the payload stored under ``key`` or None."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT payload FROM ledger_state WHERE key = ?", (key,)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return bytes(row[0])
        finally:
            conn.close()

    def save(self, key: str, payload: bytes) -> None:
        """Replace the payload stored under ``key`` in one transaction."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO ledger_state (key, payload, updated_at) VALUES (?, ?, ?)",
                (key, sqlite3.Binary(payload), datetime.now().isoformat())
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def keys(self) -> List[str]:
        """Return the keys currently stored."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT key FROM ledger_state ORDER BY key")
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()


class MemoryKeyValueStore:
    """In-process key-value store, used by tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def save(self, key: str, payload: bytes) -> None:
        with self._lock:
            self._data[key] = payload
