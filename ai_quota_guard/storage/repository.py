"""
Repository pattern for data access.

Stores each persisted tree (credentials, usage) as one JSON blob under a
fixed key. Every mutation is a whole-record read-modify-write run inside a
single write-locked transaction.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Optional, Tuple, TypeVar

from .db import DEFAULT_DB_PATH, get_connection

logger = logging.getLogger(__name__)

T = TypeVar("T")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the kv_store table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
    finally:
        conn.close()


def _decode(key: str, raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        logger.warning("Discarding unreadable blob %r: %s", key, e)
        return None


def _write(conn: sqlite3.Connection, key: str, value: Any) -> None:
    conn.execute(
        """
        INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json.dumps(value), datetime.now().isoformat()),
    )


class BlobRepository:
    """Key/value store of JSON blobs backed by SQLite.

    Reads never raise on bad data: a missing or undecodable blob reads as
    None and the owning component substitutes its default structure.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository and make sure its table exists.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def get(self, key: str) -> Any:
        """Return the decoded blob stored under key, or None."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return _decode(key, row[0] if row else None)
        finally:
            conn.close()

    def set(self, key: str, value: Any) -> None:
        """Replace the blob stored under key."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            _write(conn, key, value)
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        """Remove the blob stored under key; no-op if absent."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        finally:
            conn.close()

    def update(self, key: str, mutate: Callable[[Any], Tuple[Any, T]]) -> T:
        """Atomically read, transform and write back one blob.

        The write lock is taken before the read, so concurrent updaters of
        the same database are serialized on the whole record.

        Args:
            key: Blob key
            mutate: Receives the current decoded blob (or None) and returns
                ``(new_value, result)``; ``new_value`` is persisted

        Returns:
            The ``result`` part returned by ``mutate``
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            new_value, result = mutate(_decode(key, row[0] if row else None))
            _write(conn, key, new_value)
            conn.execute("COMMIT")
            return result
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
