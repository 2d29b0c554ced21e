# Guardian Module - Monitor Baseline
#
# Per-category snapshot of the last-observed item set, keyed by
# identifier. The in-memory copy is authoritative while the monitor
# runs and is written through to MonitorDatabase so restarts keep it.
#
# Callers run scans outside the lock; only the map swap happens inside.

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..core.exceptions import StoreError
from ..core.models import PersistenceCategory, PersistenceItem
from .monitor_database import MonitorDatabase

logger = logging.getLogger(__name__)


class MonitorBaseline:
    """Thread-safe baseline store.

    Args:
        database: Optional write-through persistence. Without it the
            baseline lives in memory only.
    """

    def __init__(self, database: Optional[MonitorDatabase] = None):
        self._database = database
        self._lock = threading.Lock()
        self._items: Dict[PersistenceCategory, List[PersistenceItem]] = {}
        self._created_at: Optional[datetime] = None
        if database is not None:
            self._items = database.load_baseline()
            if self._items:
                self._created_at = database.baseline_created_at() or datetime.now()
                logger.info(
                    "Loaded baseline: %d categories, %d items",
                    len(self._items), sum(len(v) for v in self._items.values()),
                )

    @property
    def exists(self) -> bool:
        with self._lock:
            return bool(self._items)

    @property
    def created_at(self) -> Optional[datetime]:
        return self._created_at

    def get(self, category: PersistenceCategory) -> Optional[List[PersistenceItem]]:
        """Baseline items for a category, or None if it was never captured."""
        with self._lock:
            items = self._items.get(category)
            return list(items) if items is not None else None

    def find(self, identifier: str, category: Optional[PersistenceCategory] = None) -> Optional[PersistenceItem]:
        with self._lock:
            categories = [category] if category else list(self._items)
            for cat in categories:
                for item in self._items.get(cat, []):
                    if item.identifier == identifier:
                        return item
        return None

    def create(self, items: Iterable[PersistenceItem]) -> None:
        """Replace the whole baseline from a full scan."""
        grouped: Dict[PersistenceCategory, List[PersistenceItem]] = {}
        for item in items:
            grouped.setdefault(item.category, []).append(item)
        with self._lock:
            self._items = grouped
            self._created_at = datetime.now()
            if self._database is not None:
                self._database.clear_baseline()
                for category, category_items in grouped.items():
                    self._database.save_baseline(category, category_items)

    def update(self, category: PersistenceCategory, items: Iterable[PersistenceItem]) -> None:
        """Overwrite one category with freshly scanned items."""
        items = list(items)
        with self._lock:
            self._items[category] = items
            if self._created_at is None:
                self._created_at = datetime.now()
            if self._database is not None:
                try:
                    self._database.save_baseline(category, items)
                except StoreError as exc:
                    # in-memory copy stays current; next update retries the write
                    logger.warning("Failed to persist baseline for %s: %s", category.value, exc)

    def clear(self) -> None:
        with self._lock:
            self._items = {}
            self._created_at = None
            if self._database is not None:
                self._database.clear_baseline()

    def stats(self) -> Dict[str, int]:
        """Item count per category value."""
        with self._lock:
            return {category.value: len(items) for category, items in self._items.items()}

    def all_items(self) -> List[PersistenceItem]:
        with self._lock:
            return [item for items in self._items.values() for item in items]
