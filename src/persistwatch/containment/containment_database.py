# Containment Database
# Persistent SQLite storage for containment actions and live network rules.
#
# containment_actions is the append-only audit ledger: rows are inserted
# for every contain / release / extend; afterwards only the status and
# expiry of still-open rows change. network_rules holds exactly the rules that are
# currently applied, so a restart can re-apply or purge them.
#
# Shares persistwatch.db with MonitorDatabase; tables do not overlap.

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from ..core.db import connect as db_connect
from ..core.db import data_dir, from_iso, to_iso
from ..core.exceptions import StoreError
from .models import (
    ContainmentAction,
    ContainmentActionType,
    ContainmentStatus,
    NetworkMethod,
    NetworkRule,
)

logger = logging.getLogger(__name__)

# Action types that open a containment (as opposed to closing or amending one)
_OPENING_ACTIONS = (
    ContainmentActionType.CONTAIN.value,
    ContainmentActionType.PERSISTENCE_DISABLE.value,
    ContainmentActionType.NETWORK_BLOCK.value,
)


class ContainmentDatabase:
    """SQLite persistence for containment actions and network rules.

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
                CREATE TABLE IF NOT EXISTS containment_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_identifier TEXT NOT NULL,
                    item_category TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL,
                    binary_path TEXT,
                    binary_hash TEXT,
                    plist_path TEXT,
                    plist_backup TEXT,
                    network_rule_id TEXT,
                    network_anchor TEXT,
                    network_method TEXT,
                    status TEXT NOT NULL,
                    expires_at TIMESTAMP,
                    details TEXT NOT NULL DEFAULT '{}'
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_containment_item
                ON containment_actions(item_identifier)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_containment_status
                ON containment_actions(status)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS network_rules (
                    id TEXT PRIMARY KEY,
                    item_identifier TEXT NOT NULL,
                    anchor TEXT NOT NULL,
                    binary_path TEXT NOT NULL,
                    method TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    expires_at TIMESTAMP
                )
            """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with db_connect(self.db_path, row_factory=True, check_same_thread=False) as conn:
                yield conn
                conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"Containment database error: {exc}") from exc

    # ── Containment actions ──────────────────────────────────────────

    def save_containment_action(self, action: ContainmentAction) -> ContainmentAction:
        """Insert an action and return it with its row id filled in."""
        with self._transaction() as conn:
            cur = conn.execute(
                """INSERT INTO containment_actions
                   (item_identifier, item_category, action_type, timestamp,
                    binary_path, binary_hash, plist_path, plist_backup,
                    network_rule_id, network_anchor, network_method,
                    status, expires_at, details)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    action.item_identifier,
                    action.item_category,
                    action.action_type.value,
                    to_iso(action.timestamp),
                    action.binary_path,
                    action.binary_hash,
                    action.plist_path,
                    action.plist_backup,
                    action.network_rule_id,
                    action.network_anchor,
                    action.network_method.value if action.network_method else None,
                    action.status.value,
                    to_iso(action.expires_at),
                    json.dumps(action.details, default=str),
                ),
            )
            action.id = cur.lastrowid
        return action

    def get_active_containment(self, identifier: str) -> Optional[ContainmentAction]:
        """Most recent open (active or partial) containment for an item."""
        with self._transaction() as conn:
            row = conn.execute(
                f"""SELECT * FROM containment_actions
                    WHERE item_identifier = ?
                      AND status IN ('active', 'partial')
                      AND action_type IN ({",".join("?" * len(_OPENING_ACTIONS))})
                    ORDER BY id DESC LIMIT 1""",
                (identifier, *_OPENING_ACTIONS),
            ).fetchone()
        return self._row_to_action(row) if row else None

    def get_all_active_containments(self) -> List[ContainmentAction]:
        """Every open containment action, oldest first.

        An item contained in two steps (persistence, then network) has
        two open rows.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                f"""SELECT * FROM containment_actions
                    WHERE status IN ('active', 'partial')
                      AND action_type IN ({",".join("?" * len(_OPENING_ACTIONS))})
                    ORDER BY id""",
                _OPENING_ACTIONS,
            ).fetchall()
        return [self._row_to_action(row) for row in rows]

    def close_open_containments(self, identifier: str, status: ContainmentStatus) -> int:
        """Set every open action for an item to a terminal status."""
        with self._transaction() as conn:
            cur = conn.execute(
                """UPDATE containment_actions SET status = ?
                   WHERE item_identifier = ? AND status IN ('active', 'partial')""",
                (status.value, identifier),
            )
        return cur.rowcount

    def update_open_expiry(self, identifier: str, expires_at: Optional[datetime]) -> None:
        with self._transaction() as conn:
            conn.execute(
                """UPDATE containment_actions SET expires_at = ?
                   WHERE item_identifier = ? AND status IN ('active', 'partial')""",
                (to_iso(expires_at), identifier),
            )

    def get_containment_history(self, identifier: str) -> List[ContainmentAction]:
        """Every action recorded for an item, newest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM containment_actions WHERE item_identifier = ? ORDER BY id DESC",
                (identifier,),
            ).fetchall()
        return [self._row_to_action(row) for row in rows]

    def get_recent_actions(self, limit: int = 100) -> List[ContainmentAction]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM containment_actions ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_action(row) for row in rows]

    # ── Network rules ────────────────────────────────────────────────

    def save_network_rule(self, rule: NetworkRule, item_identifier: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO network_rules
                   (id, item_identifier, anchor, binary_path, method, created_at, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    rule.id,
                    item_identifier,
                    rule.anchor,
                    rule.binary_path,
                    rule.method.value,
                    to_iso(rule.created_at),
                    to_iso(rule.expires_at),
                ),
            )

    def remove_network_rule(self, rule_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM network_rules WHERE id = ?", (rule_id,))
        return cur.rowcount > 0

    def get_network_rule(self, item_identifier: str) -> Optional[NetworkRule]:
        """Newest stored rule for an item."""
        with self._transaction() as conn:
            row = conn.execute(
                """SELECT * FROM network_rules WHERE item_identifier = ?
                   ORDER BY created_at DESC LIMIT 1""",
                (item_identifier,),
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def get_active_network_rules(self) -> List[Tuple[NetworkRule, str]]:
        """All stored rules paired with their item identifier."""
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM network_rules ORDER BY created_at").fetchall()
        return [(self._row_to_rule(row), row["item_identifier"]) for row in rows]

    def clear_network_rules(self) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM network_rules")
        return cur.rowcount

    # ── Row mapping ──────────────────────────────────────────────────

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> NetworkRule:
        return NetworkRule(
            id=row["id"],
            anchor=row["anchor"],
            binary_path=row["binary_path"],
            method=NetworkMethod(row["method"]),
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
        )

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> ContainmentAction:
        try:
            details = json.loads(row["details"] or "{}")
        except json.JSONDecodeError:
            logger.warning("Unreadable details for containment action %s", row["id"])
            details = {}
        return ContainmentAction(
            id=row["id"],
            item_identifier=row["item_identifier"],
            item_category=row["item_category"],
            action_type=ContainmentActionType(row["action_type"]),
            timestamp=from_iso(row["timestamp"]),
            binary_path=row["binary_path"],
            binary_hash=row["binary_hash"],
            plist_path=row["plist_path"],
            plist_backup=row["plist_backup"],
            network_rule_id=row["network_rule_id"],
            network_anchor=row["network_anchor"],
            network_method=NetworkMethod(row["network_method"]) if row["network_method"] else None,
            status=ContainmentStatus(row["status"]),
            expires_at=from_iso(row["expires_at"]),
            details=details,
        )
