"""
Database connection management.

Provides the SQLite connection backing the usage ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "quota_guard.db"

# Seconds a connection waits on a locked database before raising
BUSY_TIMEOUT = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
