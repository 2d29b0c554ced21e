# Core Module - Persistence Item Data Model
#
# Shared types for everything downstream of the scanners:
#   - PersistenceCategory: the auto-start mechanism an item belongs to,
#     with the directories the watcher observes for it
#   - TrustLevel / SignatureInfo: the code-signing verdict attached by a
#     trust verifier
#   - PersistenceItem: one immutable snapshot of an auto-start entry
#
# Items are produced fresh on every scan and never mutated in place;
# the risk scorer returns copies via dataclasses.replace().

import os
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .db import from_iso, to_iso


# ── Categories ───────────────────────────────────────────────────────

class PersistenceCategory(str, Enum):
    """OS auto-start mechanism an item was enumerated from."""

    LAUNCH_DAEMONS = "launch_daemons"
    LAUNCH_AGENTS = "launch_agents"
    LOGIN_ITEMS = "login_items"
    KERNEL_EXTENSIONS = "kernel_extensions"
    SYSTEM_EXTENSIONS = "system_extensions"
    PRIVILEGED_HELPERS = "privileged_helpers"
    CRON_JOBS = "cron_jobs"
    MDM_PROFILES = "mdm_profiles"
    APPLICATION_SUPPORT = "application_support"
    AUTHORIZATION_PLUGINS = "authorization_plugins"
    SHELL_STARTUP_FILES = "shell_startup_files"
    TCC_ACCESSIBILITY = "tcc_accessibility"
    DYLIB_HIJACKING = "dylib_hijacking"
    BTM_DATABASE = "btm_database"
    PERIODIC_SCRIPTS = "periodic_scripts"
    LOGIN_HOOKS = "login_hooks"
    SPOTLIGHT_IMPORTERS = "spotlight_importers"
    QUICKLOOK_PLUGINS = "quicklook_plugins"
    DIRECTORY_SERVICES_PLUGINS = "directory_services_plugins"
    FINDER_SYNC_EXTENSIONS = "finder_sync_extensions"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def is_core(self) -> bool:
        return self in CORE_CATEGORIES

    @property
    def monitored_paths(self) -> List[str]:
        """Directories observed for this category, with ~ expanded."""
        return [os.path.expanduser(p) for p in _MONITORED_PATHS.get(self, ())]

    @classmethod
    def monitorable(cls) -> List["PersistenceCategory"]:
        """Categories that have at least one directory to watch."""
        return [c for c in cls if _MONITORED_PATHS.get(c)]


_DISPLAY_NAMES: Dict[PersistenceCategory, str] = {
    PersistenceCategory.LAUNCH_DAEMONS: "Launch Daemons",
    PersistenceCategory.LAUNCH_AGENTS: "Launch Agents",
    PersistenceCategory.LOGIN_ITEMS: "Login Items",
    PersistenceCategory.KERNEL_EXTENSIONS: "Kernel Extensions",
    PersistenceCategory.SYSTEM_EXTENSIONS: "System Extensions",
    PersistenceCategory.PRIVILEGED_HELPERS: "Privileged Helpers",
    PersistenceCategory.CRON_JOBS: "Cron Jobs",
    PersistenceCategory.MDM_PROFILES: "MDM Profiles",
    PersistenceCategory.APPLICATION_SUPPORT: "Application Support",
    PersistenceCategory.AUTHORIZATION_PLUGINS: "Authorization Plugins",
    PersistenceCategory.SHELL_STARTUP_FILES: "Shell Startup Files",
    PersistenceCategory.TCC_ACCESSIBILITY: "TCC/Accessibility",
    PersistenceCategory.DYLIB_HIJACKING: "Dylib Hijacking",
    PersistenceCategory.BTM_DATABASE: "BTM Database",
    PersistenceCategory.PERIODIC_SCRIPTS: "Periodic Scripts",
    PersistenceCategory.LOGIN_HOOKS: "Login Hooks",
    PersistenceCategory.SPOTLIGHT_IMPORTERS: "Spotlight Importers",
    PersistenceCategory.QUICKLOOK_PLUGINS: "Quick Look Plugins",
    PersistenceCategory.DIRECTORY_SERVICES_PLUGINS: "Directory Services Plugins",
    PersistenceCategory.FINDER_SYNC_EXTENSIONS: "Finder Sync Extensions",
}

# MDM profiles are queried through `profiles`, not the filesystem, and the
# remaining categories without entries live in files the watcher cannot
# scope to a directory (shell dotfiles, TCC.db, dyld load commands).
_MONITORED_PATHS: Dict[PersistenceCategory, Tuple[str, ...]] = {
    PersistenceCategory.LAUNCH_DAEMONS: (
        "/Library/LaunchDaemons",
        "/System/Library/LaunchDaemons",
    ),
    PersistenceCategory.LAUNCH_AGENTS: (
        "/Library/LaunchAgents",
        "/System/Library/LaunchAgents",
        "~/Library/LaunchAgents",
    ),
    PersistenceCategory.LOGIN_ITEMS: (
        "~/Library/Application Support/com.apple.backgroundtaskmanagementagent",
    ),
    PersistenceCategory.KERNEL_EXTENSIONS: (
        "/Library/Extensions",
        "/System/Library/Extensions",
    ),
    PersistenceCategory.SYSTEM_EXTENSIONS: ("/Library/SystemExtensions",),
    PersistenceCategory.PRIVILEGED_HELPERS: ("/Library/PrivilegedHelperTools",),
    PersistenceCategory.CRON_JOBS: ("/var/at/tabs", "/usr/lib/cron/tabs"),
    PersistenceCategory.APPLICATION_SUPPORT: ("~/Library/Application Support",),
    PersistenceCategory.AUTHORIZATION_PLUGINS: ("/Library/Security/SecurityAgentPlugins",),
    PersistenceCategory.PERIODIC_SCRIPTS: (
        "/etc/periodic/daily",
        "/etc/periodic/weekly",
        "/etc/periodic/monthly",
        "/usr/local/etc/periodic/daily",
        "/usr/local/etc/periodic/weekly",
        "/usr/local/etc/periodic/monthly",
    ),
    PersistenceCategory.SPOTLIGHT_IMPORTERS: ("/Library/Spotlight", "~/Library/Spotlight"),
    PersistenceCategory.QUICKLOOK_PLUGINS: ("/Library/QuickLook", "~/Library/QuickLook"),
    PersistenceCategory.DIRECTORY_SERVICES_PLUGINS: ("/Library/DirectoryServices/PlugIns",),
}

CORE_CATEGORIES: Tuple[PersistenceCategory, ...] = (
    PersistenceCategory.LAUNCH_DAEMONS,
    PersistenceCategory.LAUNCH_AGENTS,
    PersistenceCategory.LOGIN_ITEMS,
    PersistenceCategory.KERNEL_EXTENSIONS,
    PersistenceCategory.SYSTEM_EXTENSIONS,
    PersistenceCategory.PRIVILEGED_HELPERS,
    PersistenceCategory.CRON_JOBS,
    PersistenceCategory.MDM_PROFILES,
    PersistenceCategory.APPLICATION_SUPPORT,
)


# ── Trust ────────────────────────────────────────────────────────────

class TrustLevel(str, Enum):
    """Code-signing verdict, from most to least trusted."""

    APPLE = "apple"
    KNOWN_VENDOR = "known_vendor"
    SIGNED = "signed"
    UNKNOWN = "unknown"
    SUSPICIOUS = "suspicious"
    UNSIGNED = "unsigned"

    @property
    def rank(self) -> int:
        """Sort rank, lower = worse."""
        return _TRUST_RANK[self]


_TRUST_RANK: Dict[TrustLevel, int] = {
    TrustLevel.UNSIGNED: 0,
    TrustLevel.SUSPICIOUS: 1,
    TrustLevel.UNKNOWN: 2,
    TrustLevel.SIGNED: 3,
    TrustLevel.KNOWN_VENDOR: 4,
    TrustLevel.APPLE: 5,
}


@dataclass(frozen=True)
class SignatureInfo:
    """Code signature details for an executable."""

    is_signed: bool = False
    is_valid: bool = False
    is_apple_signed: bool = False
    is_notarized: bool = False
    has_hardened_runtime: bool = False
    team_identifier: Optional[str] = None
    bundle_identifier: Optional[str] = None
    common_name: Optional[str] = None
    organization_name: Optional[str] = None
    certificate_expiration_date: Optional[datetime] = None
    is_certificate_expired: bool = False
    signing_authority: List[str] = field(default_factory=list)

    @property
    def is_ad_hoc(self) -> bool:
        return self.is_signed and not self.team_identifier and not self.is_apple_signed

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["certificate_expiration_date"] = to_iso(self.certificate_expiration_date)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignatureInfo":
        kwargs = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        kwargs["certificate_expiration_date"] = from_iso(data.get("certificate_expiration_date"))
        kwargs["signing_authority"] = list(data.get("signing_authority") or [])
        return cls(**kwargs)


# ── Items ────────────────────────────────────────────────────────────

_DATETIME_FIELDS = (
    "plist_created_at",
    "plist_modified_at",
    "binary_created_at",
    "binary_modified_at",
    "binary_last_executed_at",
    "discovered_at",
)


@dataclass(frozen=True)
class PersistenceItem:
    """One auto-start entry as observed by a single scan.

    ``identifier`` is stable across scans and unique within a category;
    it is the key for baseline comparison and containment state.
    """

    identifier: str
    category: PersistenceCategory
    name: str
    plist_path: Optional[str] = None
    executable_path: Optional[str] = None
    trust_level: TrustLevel = TrustLevel.UNKNOWN
    signature_info: Optional[SignatureInfo] = None
    is_enabled: bool = True
    is_loaded: bool = False
    program_arguments: List[str] = field(default_factory=list)
    run_at_load: Optional[bool] = None
    keep_alive: Optional[bool] = None
    working_directory: Optional[str] = None
    environment_variables: Dict[str, str] = field(default_factory=dict)
    bundle_identifier: Optional[str] = None
    version: Optional[str] = None
    plist_created_at: Optional[datetime] = None
    plist_modified_at: Optional[datetime] = None
    binary_created_at: Optional[datetime] = None
    binary_modified_at: Optional[datetime] = None
    binary_last_executed_at: Optional[datetime] = None
    discovered_at: datetime = field(default_factory=datetime.now)
    risk_score: Optional[int] = None
    risk_details: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def effective_executable_path(self) -> Optional[str]:
        """Executable path, falling back to the first program argument."""
        if self.executable_path:
            return self.executable_path
        if self.program_arguments:
            return self.program_arguments[0]
        return None

    @property
    def executable_exists(self) -> bool:
        path = self.effective_executable_path
        return bool(path) and Path(path).exists()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["category"] = self.category.value
        d["trust_level"] = self.trust_level.value
        d["signature_info"] = self.signature_info.to_dict() if self.signature_info else None
        for name in _DATETIME_FIELDS:
            d[name] = to_iso(getattr(self, name))
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistenceItem":
        kwargs = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        kwargs["category"] = PersistenceCategory(data["category"])
        kwargs["trust_level"] = TrustLevel(data.get("trust_level") or TrustLevel.UNKNOWN.value)
        sig = data.get("signature_info")
        kwargs["signature_info"] = SignatureInfo.from_dict(sig) if sig else None
        for name in _DATETIME_FIELDS:
            if name in data:
                kwargs[name] = from_iso(data[name])
        if kwargs.get("discovered_at") is None:
            kwargs.pop("discovered_at", None)
        kwargs["program_arguments"] = list(data.get("program_arguments") or [])
        kwargs["environment_variables"] = dict(data.get("environment_variables") or {})
        kwargs["risk_details"] = list(data.get("risk_details") or [])
        return cls(**kwargs)
