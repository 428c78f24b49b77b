"""
Database connection management.

Provides SQLite connection for data persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "subscription_lifecycle.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Each call opens a fresh connection so callers on different threads never
    share one. A busy timeout lets concurrent writers wait for the lock
    instead of failing immediately.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    return sqlite3.connect(str(path), timeout=10.0)
