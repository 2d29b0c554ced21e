# Core Module - Central SQLite Connection Helper
#
# Every PersistWatch SQLite database uses `connect()` from this module
# instead of raw `sqlite3.connect()`:
#
#   - WAL journal mode (the monitor thread writes history while the API reads it)
#   - busy_timeout to avoid SQLITE_BUSY under contention
#   - foreign_keys enforcement on every connection
#
# Also holds the datetime <-> TEXT helpers shared by the store and the
# JSON round trip of persistence items.

import os
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().

    Returns:
        sqlite3.Connection with WAL mode, busy_timeout, and foreign_keys.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


def data_dir() -> Path:
    """Directory holding persistwatch.db and preferences.db."""
    return Path(os.environ.get("PERSISTWATCH_DATA_DIR", "data"))


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)
