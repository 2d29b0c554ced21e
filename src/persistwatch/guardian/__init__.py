# Guardian Module - Persistence Monitoring
#
# Watches persistence directories, debounces filesystem events, rescans
# the affected category and reports what changed against the baseline.

from .baseline import MonitorBaseline
from .directory_watcher import DirectoryChangeEvent, DirectoryWatcher, DirectoryWatcherManager
from .event_filter import is_noise, is_relevant
from .monitor_database import ChangeHistoryEntry, MonitorDatabase
from .notifications import Notification, NotificationDispatcher
from .persistence_monitor import MonitorState, PersistenceMonitor
from .scanner import FilesystemScanner, NullTrustVerifier

__all__ = [
    "PersistenceMonitor",
    "MonitorState",
    "MonitorBaseline",
    "MonitorDatabase",
    "ChangeHistoryEntry",
    "DirectoryWatcher",
    "DirectoryWatcherManager",
    "DirectoryChangeEvent",
    "is_noise",
    "is_relevant",
    "Notification",
    "NotificationDispatcher",
    "FilesystemScanner",
    "NullTrustVerifier",
]
