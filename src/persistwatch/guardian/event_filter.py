# Guardian Module - Filesystem Event Filter
#
# Stateless predicates deciding whether a raw filesystem event path is
# worth a rescan for a given category. Two stages:
#   1. Noise: Finder/Spotlight metadata, editor swap files, partial
#      downloads, logs and other churn that never carries persistence.
#   2. Category relevance: e.g. only *.plist matters under LaunchAgents,
#      only *.kext bundles under /Library/Extensions.

import os
from typing import Callable, Dict, FrozenSet, Tuple

from ..core.models import PersistenceCategory

NOISE_NAMES: FrozenSet[str] = frozenset(name.lower() for name in (
    ".DS_Store",
    ".localized",
    ".Spotlight-V100",
    ".fseventsd",
    ".Trashes",
    ".TemporaryItems",
    ".DocumentRevisions-V100",
    ".com.apple.timemachine.donotpresent",
))

NOISE_PREFIXES: Tuple[str, ...] = (
    "._",   # AppleDouble
    ".~",   # lock files
    "~$",   # Office temp files
)

NOISE_SUFFIXES: Tuple[str, ...] = (
    ".swp", ".swo", ".swn",
    "~",
    ".tmp", ".temp",
    ".lock",
    ".part", ".crdownload", ".download", ".partial",
)

NOISE_EXTENSIONS: FrozenSet[str] = frozenset({"log", "pid", "sock", "cache", "bak"})

SHELL_STARTUP_NAMES: FrozenSet[str] = frozenset({
    "zshrc", "zprofile", "zshenv", "zlogin", "zlogout",
    "bashrc", "bash_profile", "bash_login", "bash_logout",
    "profile",
})


def _extension(path: str) -> str:
    return os.path.splitext(os.path.basename(path))[1].lstrip(".").lower()


def is_noise(path: str) -> bool:
    """True for OS metadata, editor artifacts and temp/partial files."""
    filename = os.path.basename(path.rstrip("/"))
    lowered = filename.lower()

    if lowered in NOISE_NAMES:
        return True
    if filename.startswith(NOISE_PREFIXES):
        return True
    if lowered.endswith(NOISE_SUFFIXES):
        return True
    return _extension(filename) in NOISE_EXTENSIONS


def _bundle(ext: str) -> Callable[[str], bool]:
    def predicate(path: str) -> bool:
        return _extension(path) == ext or f".{ext}/" in path.lower()
    return predicate


def _shell_startup(path: str) -> bool:
    filename = os.path.basename(path).lower()
    return filename in SHELL_STARTUP_NAMES or filename.strip(".") in SHELL_STARTUP_NAMES


def _plist(path: str) -> bool:
    return _extension(path) == "plist"


def _spotlight_or_quicklook(path: str) -> bool:
    return _bundle("mdimporter")(path) or _bundle("qlgenerator")(path)


def _tcc(path: str) -> bool:
    return _extension(path) == "db" or os.path.basename(path).lower() == "tcc.db"


def _btm(path: str) -> bool:
    return _extension(path) == "db" or "btm" in os.path.basename(path).lower()


_CATEGORY_PREDICATES: Dict[PersistenceCategory, Callable[[str], bool]] = {
    PersistenceCategory.LAUNCH_DAEMONS: _plist,
    PersistenceCategory.LAUNCH_AGENTS: _plist,
    PersistenceCategory.KERNEL_EXTENSIONS: _bundle("kext"),
    PersistenceCategory.SYSTEM_EXTENSIONS: _bundle("systemextension"),
    PersistenceCategory.SHELL_STARTUP_FILES: _shell_startup,
    PersistenceCategory.AUTHORIZATION_PLUGINS: _bundle("bundle"),
    PersistenceCategory.SPOTLIGHT_IMPORTERS: _spotlight_or_quicklook,
    PersistenceCategory.QUICKLOOK_PLUGINS: _spotlight_or_quicklook,
    PersistenceCategory.DIRECTORY_SERVICES_PLUGINS: _bundle("dsplug"),
    PersistenceCategory.TCC_ACCESSIBILITY: _tcc,
    PersistenceCategory.BTM_DATABASE: _btm,
}


def is_relevant_for_category(path: str, category: PersistenceCategory) -> bool:
    """Category-specific file type check. Unlisted categories accept everything."""
    predicate = _CATEGORY_PREDICATES.get(category)
    if predicate is None:
        return True
    return predicate(path)


def is_relevant(path: str, category: PersistenceCategory) -> bool:
    """An event path survives both the noise filter and the category filter."""
    if is_noise(path):
        return False
    return is_relevant_for_category(path, category)
