"""
Database connection management.

Provides the SQLite connection backing the persisted credential and usage blobs.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".ai-quota-guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite connection in manual transaction mode.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection; callers issue BEGIN/COMMIT themselves
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
