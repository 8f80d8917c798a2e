"""
Database connection management.

Provides SQLite connections for the credit ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "reading_credits.db"
DEFAULT_BUSY_TIMEOUT = 30.0


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT
) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.
    
    Transactions are opened explicitly with ``BEGIN IMMEDIATE`` by the
    callers that mutate balances, so the driver must not start implicit
    ones. The busy timeout makes concurrent writers wait for the lock
    instead of failing straight away.
    
    Args:
        db_path: Path to SQLite database file
        busy_timeout: Seconds to wait on a locked database
        
    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=busy_timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
