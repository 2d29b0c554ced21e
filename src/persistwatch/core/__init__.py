# Core Module - Shared Utilities
#
# Shared functionality across all PersistWatch modules:
# - Domain models (categories, items, signatures)
# - Audit logging
# - Configuration and preferences
# - SQLite helpers and the exception hierarchy

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    log_security_event,
)
from .config import MonitorConfiguration, MonitorPreset
from .exceptions import (
    AlreadyContainedError,
    BinaryNotFoundError,
    ExternalToolFailedError,
    IntegrityMismatchError,
    ItemNotFoundError,
    NotContainedError,
    NotFoundError,
    PermissionDeniedError,
    PersistWatchError,
    PlistNotFoundError,
    ScanFailedError,
    StoreError,
)
from .models import PersistenceCategory, PersistenceItem, SignatureInfo, TrustLevel
from .preferences import Preferences

__all__ = [
    # Models
    "PersistenceCategory",
    "PersistenceItem",
    "SignatureInfo",
    "TrustLevel",
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "log_security_event",
    # Configuration
    "MonitorConfiguration",
    "MonitorPreset",
    "Preferences",
    # Errors
    "PersistWatchError",
    "NotFoundError",
    "ItemNotFoundError",
    "PlistNotFoundError",
    "BinaryNotFoundError",
    "PermissionDeniedError",
    "AlreadyContainedError",
    "NotContainedError",
    "ExternalToolFailedError",
    "StoreError",
    "IntegrityMismatchError",
    "ScanFailedError",
]
