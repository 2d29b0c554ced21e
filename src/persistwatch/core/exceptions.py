"""
PersistWatch Exception Classes

Kinds, not call sites: callers catch the base classes (NotFoundError,
ExternalToolFailedError) and only reach for the leaf types when the
distinction matters to the user (e.g. plist vs binary missing).
"""

from typing import Optional


class PersistWatchError(Exception):
    """Base exception for all PersistWatch operations"""
    pass


class NotFoundError(PersistWatchError):
    """Raised when a referenced file or record does not exist"""
    pass


class ItemNotFoundError(NotFoundError):
    """Raised when an item identifier is unknown to the baseline"""
    pass


class PlistNotFoundError(NotFoundError):
    """Raised when the item has no config file on disk"""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        super().__init__(f"Plist not found: {path}" if path else "Plist not found")


class BinaryNotFoundError(NotFoundError):
    """Raised when the item's executable is absent"""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        super().__init__(f"Binary not found: {path}" if path else "Binary not found")


class PermissionDeniedError(PersistWatchError):
    """Raised when privilege elevation is declined or fails"""
    pass


class AlreadyContainedError(PersistWatchError):
    """Raised when containing an item that is already contained"""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Item is already contained: {identifier}")


class NotContainedError(PersistWatchError):
    """Raised when releasing or extending an item that is not contained"""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Item is not contained: {identifier}")


class ExternalToolFailedError(PersistWatchError):
    """Raised when launchctl, pfctl, socketfilterfw or mv reports failure"""

    def __init__(self, tool: str, output: str = ""):
        self.tool = tool
        self.output = output
        detail = output.strip() or "no output"
        super().__init__(f"{tool} failed: {detail}")


class StoreError(PersistWatchError):
    """Raised when the SQLite store cannot be read or written"""
    pass


class IntegrityMismatchError(PersistWatchError):
    """Raised when a contained binary no longer matches its recorded hash"""

    def __init__(self, path: str, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"Hash mismatch for {path}: expected {expected[:12]}, got {actual[:12]}")


class ScanFailedError(PersistWatchError):
    """Raised when a full or targeted scan cannot complete"""
    pass
