# Monitor Database
# Persistent SQLite storage for the monitor's baseline and change history.
#
# The baseline is stored per category as one JSON row per item so a
# restart resumes diffing against the last-observed state instead of
# re-baselining. Change history is append-only; the only mutation is
# flipping the acknowledged flag.

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..core.db import connect as db_connect
from ..core.db import data_dir, from_iso, to_iso
from ..core.exceptions import StoreError
from ..core.models import PersistenceCategory, PersistenceItem
from ..intel.change_detector import ChangeDetail, ChangeType

logger = logging.getLogger(__name__)


@dataclass
class ChangeHistoryEntry:
    """A detected change as persisted, with its relevance and ack state."""

    change_type: ChangeType
    category: PersistenceCategory
    item_identifier: str
    item_name: str
    details: List[ChangeDetail] = field(default_factory=list)
    relevance_score: int = 0
    timestamp: datetime = field(default_factory=datetime.now)
    acknowledged: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "change_type": self.change_type.value,
            "category": self.category.value,
            "item_identifier": self.item_identifier,
            "item_name": self.item_name,
            "details": [d.to_dict() for d in self.details],
            "relevance_score": self.relevance_score,
            "timestamp": self.timestamp.isoformat(),
            "acknowledged": self.acknowledged,
        }


class MonitorDatabase:
    """SQLite persistence for baseline snapshots and change history.

    Every failure surfaces as StoreError.

    Args:
        db_path: Path to SQLite database file. Defaults to <data dir>/persistwatch.db.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else data_dir() / "persistwatch.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self):
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS baseline_items (
                    category TEXT NOT NULL,
                    identifier TEXT NOT NULL,
                    item_json TEXT NOT NULL,
                    PRIMARY KEY (category, identifier)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS baseline_categories (
                    category TEXT PRIMARY KEY,
                    item_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS change_history (
                    id TEXT PRIMARY KEY,
                    change_type TEXT NOT NULL,
                    category TEXT NOT NULL,
                    item_identifier TEXT NOT NULL,
                    item_name TEXT NOT NULL,
                    details TEXT NOT NULL DEFAULT '[]',
                    relevance_score INTEGER NOT NULL DEFAULT 0,
                    timestamp TIMESTAMP NOT NULL,
                    acknowledged INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_change_history_timestamp
                ON change_history(timestamp)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_change_history_ack
                ON change_history(acknowledged)
            """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with db_connect(self.db_path, row_factory=True, check_same_thread=False) as conn:
                yield conn
                conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"Monitor database error: {exc}") from exc

    # ── Baseline ─────────────────────────────────────────────────────

    def save_baseline(self, category: PersistenceCategory, items: List[PersistenceItem]) -> None:
        """Replace the stored baseline for one category."""
        now = datetime.utcnow().isoformat()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT created_at FROM baseline_categories WHERE category = ?",
                (category.value,),
            ).fetchone()
            created_at = row["created_at"] if row else now

            conn.execute("DELETE FROM baseline_items WHERE category = ?", (category.value,))
            conn.executemany(
                "INSERT OR REPLACE INTO baseline_items (category, identifier, item_json) VALUES (?, ?, ?)",
                [(category.value, item.identifier, json.dumps(item.to_dict())) for item in items],
            )
            conn.execute(
                """INSERT INTO baseline_categories (category, item_count, created_at, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(category) DO UPDATE SET
                       item_count = excluded.item_count,
                       updated_at = excluded.updated_at""",
                (category.value, len(items), created_at, now),
            )

    def load_baseline(self) -> Dict[PersistenceCategory, List[PersistenceItem]]:
        """Load every stored category snapshot."""
        with self._transaction() as conn:
            categories = conn.execute("SELECT category FROM baseline_categories").fetchall()
            rows = conn.execute("SELECT category, item_json FROM baseline_items").fetchall()

        baseline: Dict[PersistenceCategory, List[PersistenceItem]] = {}
        for row in categories:
            try:
                baseline[PersistenceCategory(row["category"])] = []
            except ValueError:
                logger.warning("Ignoring unknown baseline category %s", row["category"])
        for row in rows:
            try:
                category = PersistenceCategory(row["category"])
                item = PersistenceItem.from_dict(json.loads(row["item_json"]))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable baseline row in %s: %s", row["category"], exc)
                continue
            baseline.setdefault(category, []).append(item)
        return baseline

    def baseline_created_at(self) -> Optional[datetime]:
        with self._transaction() as conn:
            row = conn.execute("SELECT MIN(created_at) AS created FROM baseline_categories").fetchone()
        return from_iso(row["created"]) if row else None

    def clear_baseline(self) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM baseline_items")
            conn.execute("DELETE FROM baseline_categories")

    # ── Change history ───────────────────────────────────────────────

    def save_change_history(self, entry: ChangeHistoryEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO change_history
                   (id, change_type, category, item_identifier, item_name,
                    details, relevance_score, timestamp, acknowledged)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.id,
                    entry.change_type.value,
                    entry.category.value,
                    entry.item_identifier,
                    entry.item_name,
                    json.dumps([d.to_dict() for d in entry.details]),
                    entry.relevance_score,
                    to_iso(entry.timestamp),
                    int(entry.acknowledged),
                ),
            )

    def get_change_history(self, limit: int = 100) -> List[ChangeHistoryEntry]:
        """Most recent entries first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM change_history ORDER BY timestamp DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def acknowledge_change(self, entry_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE change_history SET acknowledged = 1 WHERE id = ? AND acknowledged = 0",
                (entry_id,),
            )
        return cur.rowcount > 0

    def acknowledge_all(self) -> int:
        with self._transaction() as conn:
            cur = conn.execute("UPDATE change_history SET acknowledged = 1 WHERE acknowledged = 0")
        return cur.rowcount

    def get_unacknowledged_count(self) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM change_history WHERE acknowledged = 0"
            ).fetchone()
        return int(row["n"])

    def clear_change_history(self) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM change_history")

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ChangeHistoryEntry:
        return ChangeHistoryEntry(
            id=row["id"],
            change_type=ChangeType(row["change_type"]),
            category=PersistenceCategory(row["category"]),
            item_identifier=row["item_identifier"],
            item_name=row["item_name"],
            details=[ChangeDetail.from_dict(d) for d in json.loads(row["details"] or "[]")],
            relevance_score=row["relevance_score"],
            timestamp=from_iso(row["timestamp"]),
            acknowledged=bool(row["acknowledged"]),
        )
