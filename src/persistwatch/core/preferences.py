# Preferences Store
# SQLite-backed key/value store for monitor settings.
# Values are stored as JSON text so booleans, numbers and category lists
# survive the round trip without per-key parsing.

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .db import connect as db_connect
from .db import data_dir
from .exceptions import StoreError

logger = logging.getLogger(__name__)


class Preferences:
    """SQLite key/value store for preferences.

    Args:
        db_path: Path to SQLite file. Defaults to <data dir>/preferences.db.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else data_dir() / "preferences.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self):
        with db_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS preferences (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        return db_connect(self.db_path, row_factory=True)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a preference value by key. Returns default if not found."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM preferences WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to read preference {key}: {exc}") from exc
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except ValueError:
            logger.warning("Ignoring malformed preference %s", key)
            return default

    def set(self, key: str, value: Any) -> None:
        """Set a preference value (upsert)."""
        now = datetime.utcnow().isoformat()
        try:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO preferences (key, value, updated_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET
                           value = excluded.value,
                           updated_at = excluded.updated_at""",
                    (key, json.dumps(value), now),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to write preference {key}: {exc}") from exc

    def get_all(self) -> Dict[str, Any]:
        """Return all preferences as a dict."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key, value FROM preferences ORDER BY key"
            ).fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    def delete(self, key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM preferences WHERE key = ?", (key,))
            conn.commit()
        return cur.rowcount > 0
