# Guardian Module - Scanner and Trust Verifier Adapters
#
# The monitor depends on two collaborators it does not implement:
#   - Scanner: enumerates persistence items (all categories or one)
#   - TrustVerifier: attaches a code-signing verdict to an item
#
# FilesystemScanner is the built-in Scanner. It lists each watched
# directory, reads launchd plists with plistlib for the launch
# categories, and records file timestamps for forensic diffing. Platform
# specific enumerators (BTM database, MDM profiles, TCC) plug in through
# the same protocol.

import logging
import os
import plistlib
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from ..core.exceptions import ScanFailedError
from ..core.models import PersistenceCategory, PersistenceItem, TrustLevel
from .event_filter import is_relevant

logger = logging.getLogger(__name__)

_LAUNCHD_CATEGORIES = frozenset({
    PersistenceCategory.LAUNCH_DAEMONS,
    PersistenceCategory.LAUNCH_AGENTS,
})

# Categories whose directory entries are themselves the executables
_EXECUTABLE_CATEGORIES = frozenset({
    PersistenceCategory.PRIVILEGED_HELPERS,
    PersistenceCategory.CRON_JOBS,
    PersistenceCategory.PERIODIC_SCRIPTS,
})


@runtime_checkable
class Scanner(Protocol):
    def scan_all(self) -> List[PersistenceItem]: ...

    def scan(self, category: PersistenceCategory) -> List[PersistenceItem]: ...


@runtime_checkable
class TrustVerifier(Protocol):
    def verify(self, item: PersistenceItem) -> PersistenceItem: ...


class NullTrustVerifier:
    """Leaves items unverified (trust UNKNOWN, no signature info)."""

    def verify(self, item: PersistenceItem) -> PersistenceItem:
        return item


def verify_all(verifier: Optional[TrustVerifier], items: Iterable[PersistenceItem]) -> List[PersistenceItem]:
    """Apply a verifier to each item; a failing verification leaves the item unknown."""
    if verifier is None:
        return list(items)
    verified = []
    for item in items:
        try:
            verified.append(verifier.verify(item))
        except Exception as exc:
            logger.warning("Trust verification failed for %s: %s", item.identifier, exc)
            verified.append(replace(item, trust_level=TrustLevel.UNKNOWN, signature_info=None))
    return verified


def _mtime(path: str) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(os.stat(path).st_mtime)
    except OSError:
        return None


def _birthtime(path: str) -> Optional[datetime]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    created = getattr(st, "st_birthtime", st.st_ctime)
    return datetime.fromtimestamp(created)


class FilesystemScanner:
    """Directory-listing scanner for the watchable categories.

    Args:
        path_resolver: Category -> directories (defaults to monitored_paths).
        categories: Categories covered by scan_all (defaults to all monitorable).
    """

    def __init__(
        self,
        path_resolver: Optional[Callable[[PersistenceCategory], List[str]]] = None,
        categories: Optional[Iterable[PersistenceCategory]] = None,
    ):
        self._path_resolver = path_resolver or (lambda category: category.monitored_paths)
        self._categories = list(categories) if categories is not None else PersistenceCategory.monitorable()

    def scan_all(self) -> List[PersistenceItem]:
        items: List[PersistenceItem] = []
        for category in self._categories:
            items.extend(self.scan(category))
        logger.info("Full scan found %d items in %d categories", len(items), len(self._categories))
        return items

    def scan(self, category: PersistenceCategory) -> List[PersistenceItem]:
        items: List[PersistenceItem] = []
        for directory in self._path_resolver(category):
            if not os.path.isdir(directory):
                continue
            try:
                entries = sorted(os.listdir(directory))
            except PermissionError as exc:
                logger.warning("No permission to list %s: %s", directory, exc)
                continue
            except OSError as exc:
                raise ScanFailedError(f"Cannot list {directory}: {exc}") from exc

            for entry in entries:
                path = os.path.join(directory, entry)
                if not is_relevant(path, category):
                    continue
                item = self._build_item(category, path)
                if item is not None:
                    items.append(item)
        return items

    def _build_item(self, category: PersistenceCategory, path: str) -> Optional[PersistenceItem]:
        name = os.path.splitext(os.path.basename(path))[0]
        if category in _LAUNCHD_CATEGORIES:
            return self._build_launchd_item(category, path, name)

        executable = path if category in _EXECUTABLE_CATEGORIES else None
        return PersistenceItem(
            identifier=path,
            category=category,
            name=name,
            plist_path=None,
            executable_path=executable,
            is_enabled=True,
            plist_created_at=None if executable else _birthtime(path),
            plist_modified_at=None if executable else _mtime(path),
            binary_created_at=_birthtime(executable) if executable else None,
            binary_modified_at=_mtime(executable) if executable else None,
        )

    def _build_launchd_item(
        self, category: PersistenceCategory, path: str, name: str
    ) -> Optional[PersistenceItem]:
        try:
            with open(path, "rb") as f:
                data: Dict[str, Any] = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException, ValueError) as exc:
            logger.debug("Unreadable plist %s: %s", path, exc)
            data = {}
        if not isinstance(data, dict):
            data = {}

        label = data.get("Label") or name
        arguments = [str(a) for a in data.get("ProgramArguments") or []]
        program = data.get("Program")
        executable = str(program) if program else (arguments[0] if arguments else None)
        keep_alive = data.get("KeepAlive")
        env = data.get("EnvironmentVariables")
        if not isinstance(env, dict):
            env = {}

        return PersistenceItem(
            identifier=str(label),
            category=category,
            name=str(label),
            plist_path=path,
            executable_path=executable,
            is_enabled=not bool(data.get("Disabled", False)),
            program_arguments=arguments,
            run_at_load=data.get("RunAtLoad") if isinstance(data.get("RunAtLoad"), bool) else None,
            keep_alive=bool(keep_alive) if keep_alive is not None else None,
            working_directory=data.get("WorkingDirectory"),
            environment_variables={str(k): str(v) for k, v in env.items()},
            plist_created_at=_birthtime(path),
            plist_modified_at=_mtime(path),
            binary_created_at=_birthtime(executable) if executable else None,
            binary_modified_at=_mtime(executable) if executable else None,
        )
