# Guardian Module - Persistence Directory Watcher
#
# Watches the directories of one persistence category with the watchdog
# filesystem observer (FSEvents on macOS, inotify elsewhere) and turns
# raw events into coalesced DirectoryChangeEvents:
#
#   1. Drop noise and category-irrelevant paths (event_filter)
#   2. Per-path debounce: the first event in a quiet window is emitted
#      immediately; later events inside the cooldown replace a single
#      pending trailing emission instead of queuing
#   3. Hand the event to the watcher's callback
#
# DirectoryWatcherManager owns one watcher per category and fans every
# watcher's events into one callback.

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from ..core.config import MonitorConfiguration
from ..core.models import PersistenceCategory
from .event_filter import is_relevant

logger = logging.getLogger(__name__)

# OS-level coalescing latency handed to the observer, on top of the
# application-level cooldown below.
NATIVE_LATENCY_SECONDS = 0.5

# Prune debounce bookkeeping once it grows past this many paths
_MAX_TRACKED_PATHS = 200


class FSChangeEventType(str, Enum):
    CREATED = "created"
    DELETED = "deleted"
    MODIFIED = "modified"
    RENAMED = "renamed"


# watchdog reports one type per event; opened/closed events carry no
# persistence change and are dropped.
_WATCHDOG_EVENT_TYPES: Dict[str, FSChangeEventType] = {
    EVENT_TYPE_CREATED: FSChangeEventType.CREATED,
    EVENT_TYPE_DELETED: FSChangeEventType.DELETED,
    EVENT_TYPE_MODIFIED: FSChangeEventType.MODIFIED,
    EVENT_TYPE_MOVED: FSChangeEventType.RENAMED,
}


def event_type_for(event: FileSystemEvent) -> Optional[FSChangeEventType]:
    return _WATCHDOG_EVENT_TYPES.get(event.event_type)


@dataclass(frozen=True)
class DirectoryChangeEvent:
    path: str
    event_type: FSChangeEventType
    category: PersistenceCategory
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, str]:
        return {
            "path": self.path,
            "event_type": self.event_type.value,
            "category": self.category.value,
            "timestamp": self.timestamp.isoformat(),
        }


class PersistenceEventHandler(FileSystemEventHandler):
    """Watchdog handler forwarding every event to its DirectoryWatcher."""

    def __init__(self, watcher: "DirectoryWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event):
        self._watcher.handle_event(event)


class DirectoryWatcher:
    """Watches one category's directories with per-path debouncing.

    Args:
        paths: Directories to watch (missing ones are skipped at start).
        category: Category the events are attributed to.
        on_change: Callback receiving each emitted DirectoryChangeEvent.
        config: Source of ``cooldown_interval``, read at event time.
        observer_factory: Override the watchdog Observer (for testing).
    """

    def __init__(
        self,
        paths: Iterable[str],
        category: PersistenceCategory,
        on_change: Optional[Callable[[DirectoryChangeEvent], None]] = None,
        config: Optional[MonitorConfiguration] = None,
        observer_factory: Optional[Callable[[], Observer]] = None,
    ):
        self.paths = list(paths)
        self.category = category
        self.on_change = on_change
        self._config = config or MonitorConfiguration()
        self._observer_factory = observer_factory or (lambda: Observer(timeout=NATIVE_LATENCY_SECONDS))
        self._observer = None
        self._watching = False
        self._lock = threading.Lock()
        # path -> monotonic time of last emission
        self._last_emit: Dict[str, float] = {}
        # path -> pending trailing emission
        self._pending: Dict[str, threading.Timer] = {}

    @property
    def is_watching(self) -> bool:
        return self._watching

    @property
    def cooldown(self) -> float:
        return self._config.cooldown_interval

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def start(self) -> None:
        """Start the native watch. A no-op when no configured path exists."""
        if self._observer is not None:
            logger.debug("Already watching %s", self.category.display_name)
            return

        existing = [p for p in self.paths if os.path.exists(p)]
        if not existing:
            logger.info("No valid paths to watch for %s", self.category.display_name)
            return

        observer = self._observer_factory()
        handler = PersistenceEventHandler(self)
        watched = 0
        for path in existing:
            try:
                observer.schedule(handler, path, recursive=True)
                watched += 1
            except OSError as exc:
                logger.warning("Cannot watch %s (%s): %s", self.category.value, path, exc)

        if watched == 0:
            return

        observer.start()
        self._observer = observer
        self._watching = True
        logger.info(
            "Started watching %s: %s", self.category.display_name, ", ".join(existing)
        )

    def stop(self) -> None:
        """Stop the native watch and cancel pending emissions. Idempotent."""
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)
            logger.info("Stopped watching %s", self.category.display_name)

        with self._lock:
            self._watching = False
            for timer in self._pending.values():
                timer.cancel()
            self._pending.clear()
            self._last_emit.clear()

    # ── Event handling ───────────────────────────────────────────────

    def handle_event(self, event: FileSystemEvent) -> None:
        """Filter and debounce one raw watchdog event."""
        event_type = event_type_for(event)
        if event_type is None:
            return

        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if event_type == FSChangeEventType.RENAMED and dest:
            paths.append(dest)

        for path in paths:
            if isinstance(path, bytes):
                path = os.fsdecode(path)
            if not is_relevant(path, self.category):
                logger.debug("Filtered out: %s", path)
                continue
            self.handle_path(path, event_type)

    def handle_path(self, path: str, event_type: FSChangeEventType) -> None:
        """Emit now, or replace the pending trailing emission for this path."""
        now = time.monotonic()
        cooldown = self.cooldown
        with self._lock:
            if not self._watching:
                return
            last = self._last_emit.get(path)
            if last is not None and now - last < cooldown:
                previous = self._pending.pop(path, None)
                if previous is not None:
                    previous.cancel()
                timer = threading.Timer(
                    cooldown - (now - last), self._fire_pending, args=(path, event_type)
                )
                timer.daemon = True
                self._pending[path] = timer
                timer.start()
                return
            stale = self._pending.pop(path, None)
            if stale is not None:
                stale.cancel()
            self._record_emit(path, now)

        self._emit(path, event_type)

    def _fire_pending(self, path: str, event_type: FSChangeEventType) -> None:
        with self._lock:
            # a newer event may have replaced this timer after it fired
            if self._pending.get(path) is not threading.current_thread():
                return
            del self._pending[path]
            if not self._watching:
                return
            self._record_emit(path, time.monotonic())
        self._emit(path, event_type)

    def _record_emit(self, path: str, now: float) -> None:
        self._last_emit[path] = now
        if len(self._last_emit) > _MAX_TRACKED_PATHS:
            cooldown = self.cooldown
            expired = [
                p for p, t in self._last_emit.items()
                if now - t >= cooldown and p not in self._pending
            ]
            for p in expired:
                del self._last_emit[p]

    def _emit(self, path: str, event_type: FSChangeEventType) -> None:
        event = DirectoryChangeEvent(path=path, event_type=event_type, category=self.category)
        logger.info(
            "Change detected in %s: %s - %s",
            self.category.display_name, event_type.value, path,
        )
        callback = self.on_change
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            logger.exception("Change callback failed for %s", path)


class DirectoryWatcherManager:
    """Owns one DirectoryWatcher per category.

    All watchers report through ``on_change_detected``, which is read at
    dispatch time so the monitor can install it after watchers start.

    Args:
        config: Shared configuration handed to every watcher.
        on_change_detected: Fan-in callback.
        path_resolver: Category -> directories (defaults to monitored_paths).
        watcher_factory: Override DirectoryWatcher construction (for testing).
    """

    def __init__(
        self,
        config: Optional[MonitorConfiguration] = None,
        on_change_detected: Optional[Callable[[DirectoryChangeEvent], None]] = None,
        path_resolver: Optional[Callable[[PersistenceCategory], List[str]]] = None,
        watcher_factory: Optional[Callable[..., DirectoryWatcher]] = None,
    ):
        self.config = config or MonitorConfiguration()
        self.on_change_detected = on_change_detected
        self._path_resolver = path_resolver or (lambda category: category.monitored_paths)
        self._watcher_factory = watcher_factory or DirectoryWatcher
        self._watchers: Dict[PersistenceCategory, DirectoryWatcher] = {}
        self._lock = threading.Lock()

    @property
    def active_categories(self) -> List[PersistenceCategory]:
        with self._lock:
            return list(self._watchers)

    def is_watching(self, category: PersistenceCategory) -> bool:
        with self._lock:
            return category in self._watchers

    def start_watching(self, category: PersistenceCategory) -> bool:
        """Start a watcher for the category. Returns True if one is running."""
        with self._lock:
            if category in self._watchers:
                logger.debug("Already watching %s", category.display_name)
                return True

            paths = [p for p in self._path_resolver(category) if os.path.exists(p)]
            if not paths:
                logger.info("No paths to watch for %s", category.display_name)
                return False

            watcher = self._watcher_factory(
                paths=paths,
                category=category,
                on_change=self._dispatch,
                config=self.config,
            )
            watcher.start()
            if not watcher.is_watching:
                return False
            self._watchers[category] = watcher
            return True

    def stop_watching(self, category: PersistenceCategory) -> None:
        with self._lock:
            watcher = self._watchers.pop(category, None)
        if watcher is not None:
            watcher.stop()

    def start_all(self, categories: Iterable[PersistenceCategory]) -> List[PersistenceCategory]:
        return [c for c in categories if self.start_watching(c)]

    def stop_all(self) -> None:
        with self._lock:
            watchers = list(self._watchers.values())
            self._watchers.clear()
        for watcher in watchers:
            watcher.stop()

    def update_cooldown(self, seconds: float) -> None:
        """Change the per-path cooldown; running watchers pick it up on the next event."""
        self.config.cooldown_interval = float(seconds)
        logger.info("Watcher cooldown set to %.1fs", seconds)

    def _dispatch(self, event: DirectoryChangeEvent) -> None:
        callback = self.on_change_detected
        if callback is not None:
            callback(event)
