# PersistWatch - Main Package
#
# Host persistence detection and response: watches the directories where
# auto-start mechanisms live, diffs each rescan against a stored baseline,
# scores what changed, and can reversibly contain a suspicious item
# (disable its persistence, block its network) with timed rollback.

__version__ = "0.3.0"
__author__ = "PersistWatch Team"
__description__ = "Persistence monitoring and safe containment"

from .core import (
    EventSeverity,
    EventType,
    MonitorConfiguration,
    PersistenceCategory,
    PersistenceItem,
    get_audit_logger,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "MonitorConfiguration",
    "PersistenceCategory",
    "PersistenceItem",
]
