"""
Database connection management.

Provides SQLite connections shared by the ledger, letter store and audit log.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "letter_guard.db"

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = BUSY_TIMEOUT) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file
        timeout: Busy timeout in seconds for concurrent writers

    Returns:
        SQLite connection with foreign key constraints enabled and rows
        addressable by column name
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
