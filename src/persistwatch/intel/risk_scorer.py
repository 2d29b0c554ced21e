# Intel Module - Persistence Risk Scorer
#
# Produces a RiskAssessment for a single persistence item by summing
# independent factor buckets:
#   1. Path       - /tmp, /private/var, user Library, hidden, random names
#   2. Signature  - unsigned, invalid, expired, no hardened runtime, ad-hoc
#   3. Entitlements (optional, extracted by the caller)
#   4. Behavior   - RunAtLoad+KeepAlive, third-party root daemon
#   5. Binary     - missing, recently modified, world-writable
# then subtracting a trust discount (Apple -40, notarized+valid -20).
#
# Output: score 0-100 with a RiskSeverity band and the itemized factors.
# Pure apart from stat() calls on the executable; never raises.

import os
import re
import stat
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.models import PersistenceCategory, PersistenceItem


# ── Weights ──────────────────────────────────────────────────────────

_TMP_PATH = 25
_PRIVATE_VAR_PATH = 20
_USER_LIBRARY_PATH = 10
_HIDDEN_PATH = 15
_RANDOM_NAME = 20

_UNSIGNED = 30
_INVALID_SIGNATURE = 25
_EXPIRED_CERTIFICATE = 15
_NO_HARDENED_RUNTIME = 10
_AD_HOC_SIGNED = 20

_RUN_AT_LOAD_KEEP_ALIVE = 15
_ROOT_DAEMON = 10

_EXECUTABLE_MISSING = 20
_RECENTLY_MODIFIED = 10
_WORLD_WRITABLE = 15

_APPLE_DISCOUNT = 40
_NOTARIZED_DISCOUNT = 20

_RECENT_DAYS = 7

_ENTITLEMENT_PREFIX = "com.apple.security."

SUSPICIOUS_ENTITLEMENTS: Dict[str, int] = {
    "com.apple.security.cs.disable-library-validation": 20,
    "com.apple.security.cs.allow-dyld-environment-variables": 25,
    "com.apple.security.get-task-allow": 15,
    "com.apple.security.cs.allow-unsigned-executable-memory": 20,
    "com.apple.security.cs.debugger": 25,
    "com.apple.security.cs.allow-jit": 15,
    "com.apple.security.automation.apple-events": 5,
    "com.apple.security.temporary-exception.mach-lookup.global-name": 10,
}

_HEX_OR_UUID = re.compile(r"^[a-fA-F0-9]{8,}$|^[a-fA-F0-9-]{32,}$")
_VOWELS = frozenset("aeiouAEIOU")
_CONSONANTS = frozenset("bcdfghjklmnpqrstvwxyzBCDFGHJKLMNPQRSTVWXYZ")


# ── Data structures ──────────────────────────────────────────────────

class RiskSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: int) -> "RiskSeverity":
        if score < 25:
            return cls.LOW
        if score < 50:
            return cls.MEDIUM
        if score < 75:
            return cls.HIGH
        return cls.CRITICAL


@dataclass(frozen=True)
class RiskDetail:
    factor: str
    points: int
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiskAssessment:
    score: int = 0
    details: List[RiskDetail] = field(default_factory=list)
    severity: RiskSeverity = RiskSeverity.LOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "severity": self.severity.value,
            "details": [d.to_dict() for d in self.details],
        }


# ── Helpers ──────────────────────────────────────────────────────────

def has_random_looking_name(path: str) -> bool:
    """Heuristic for machine-generated filenames (hashes, UUIDs, noise)."""
    stem = os.path.splitext(os.path.basename(path))[0]
    if len(stem) < 8:
        return False

    vowels = sum(1 for c in stem if c in _VOWELS)
    consonants = sum(1 for c in stem if c in _CONSONANTS)
    digits = sum(1 for c in stem if c.isdigit())
    letters = vowels + consonants
    if letters == 0:
        return False

    if vowels / letters < 0.1 and len(stem) > 10:
        return True
    if digits / len(stem) > 0.3 and letters > 5:
        return True
    return bool(_HEX_OR_UUID.match(stem))


def _entitlement_enabled(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


# ── RiskScorer ───────────────────────────────────────────────────────

class RiskScorer:
    """Risk-assessment engine for persistence items.

    Stateless; one instance can be shared across threads.
    """

    def assess(
        self,
        item: PersistenceItem,
        entitlements: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> RiskAssessment:
        details: List[RiskDetail] = []
        details.extend(self._path_risks(item))
        details.extend(self._signature_risks(item))
        details.extend(self._entitlement_risks(entitlements))
        details.extend(self._behavior_risks(item))
        details.extend(self._binary_risks(item, now or datetime.now()))

        # Signer discounts apply to the clamped total.
        score = min(100, sum(d.points for d in details))

        sig = item.signature_info
        if sig is not None and sig.is_apple_signed:
            score = max(0, score - _APPLE_DISCOUNT)
        elif sig is not None and sig.is_notarized and sig.is_valid:
            score = max(0, score - _NOTARIZED_DISCOUNT)

        return RiskAssessment(
            score=score,
            details=details,
            severity=RiskSeverity.from_score(score),
        )

    def score_item(
        self,
        item: PersistenceItem,
        entitlements: Optional[Mapping[str, Any]] = None,
    ) -> PersistenceItem:
        """Return a copy of the item with risk_score and risk_details filled."""
        assessment = self.assess(item, entitlements)
        return replace(
            item,
            risk_score=assessment.score,
            risk_details=[d.to_dict() for d in assessment.details],
        )

    def score_all(self, items: Iterable[PersistenceItem]) -> List[PersistenceItem]:
        return [self.score_item(item) for item in items]

    # ── Buckets ──────────────────────────────────────────────────────

    def _path_risks(self, item: PersistenceItem) -> List[RiskDetail]:
        candidates = [
            item.plist_path,
            item.executable_path,
            item.program_arguments[0] if item.program_arguments else None,
        ]
        for path in (p for p in candidates if p):
            detail = self._classify_path(path)
            if detail is not None:
                # first match across all candidate paths wins
                return [detail]
        return []

    @staticmethod
    def _classify_path(path: str) -> Optional[RiskDetail]:
        if path.startswith("/tmp") or path.startswith("/private/tmp"):
            return RiskDetail("Suspicious Path", _TMP_PATH, "Executable in /tmp directory")

        if path.startswith("/private/var") and "/private/var/db/" not in path:
            return RiskDetail("Suspicious Path", _PRIVATE_VAR_PATH, "Executable in /private/var")

        if "/Users/" in path and "/Library/" in path:
            standard = ("/Application Support/", "/Preferences/", "/LaunchAgents/")
            if not any(s in path for s in standard):
                return RiskDetail(
                    "User Library Path", _USER_LIBRARY_PATH,
                    "Executable in user Library folder",
                )

        if any(part.startswith(".") and part != ".." for part in path.split("/") if part):
            return RiskDetail("Hidden Path", _HIDDEN_PATH, "Hidden file or directory in path")

        if has_random_looking_name(path):
            return RiskDetail("Suspicious Name", _RANDOM_NAME, "Randomly generated filename pattern")

        return None

    @staticmethod
    def _signature_risks(item: PersistenceItem) -> List[RiskDetail]:
        sig = item.signature_info
        if sig is None:
            return [RiskDetail("Unsigned", _UNSIGNED, "No code signature")]
        if not sig.is_signed:
            return [RiskDetail("Unsigned", _UNSIGNED, "Binary is not signed")]

        risks = []
        if not sig.is_valid:
            risks.append(RiskDetail(
                "Invalid Signature", _INVALID_SIGNATURE,
                "Code signature is invalid or tampered",
            ))
        if sig.is_certificate_expired:
            risks.append(RiskDetail(
                "Expired Certificate", _EXPIRED_CERTIFICATE,
                "Signing certificate has expired",
            ))
        if not sig.has_hardened_runtime and not sig.is_apple_signed:
            risks.append(RiskDetail(
                "No Hardened Runtime", _NO_HARDENED_RUNTIME,
                "Missing hardened runtime protection",
            ))
        if sig.is_ad_hoc:
            risks.append(RiskDetail(
                "Ad-hoc Signature", _AD_HOC_SIGNED,
                "Ad-hoc signed without developer identity",
            ))
        return risks

    @staticmethod
    def _entitlement_risks(entitlements: Optional[Mapping[str, Any]]) -> List[RiskDetail]:
        if not entitlements:
            return []
        risks = []
        for key, points in SUSPICIOUS_ENTITLEMENTS.items():
            if key in entitlements and _entitlement_enabled(entitlements[key]):
                risks.append(RiskDetail(
                    "Suspicious Entitlement", points,
                    key[len(_ENTITLEMENT_PREFIX):],
                ))
        return risks

    @staticmethod
    def _behavior_risks(item: PersistenceItem) -> List[RiskDetail]:
        risks = []
        if item.run_at_load and item.keep_alive:
            risks.append(RiskDetail(
                "Persistent Auto-Start", _RUN_AT_LOAD_KEEP_ALIVE,
                "RunAtLoad + KeepAlive ensures persistence",
            ))

        apple_signed = item.signature_info is not None and item.signature_info.is_apple_signed
        if (
            item.category == PersistenceCategory.LAUNCH_DAEMONS
            and item.plist_path
            and item.plist_path.startswith("/Library/LaunchDaemons")
            and not apple_signed
        ):
            risks.append(RiskDetail("Root Daemon", _ROOT_DAEMON, "Third-party daemon runs as root"))
        return risks

    @staticmethod
    def _binary_risks(item: PersistenceItem, now: datetime) -> List[RiskDetail]:
        risks = []
        if item.executable_path and not item.executable_exists:
            risks.append(RiskDetail(
                "Missing Executable", _EXECUTABLE_MISSING,
                "Referenced executable not found",
            ))

        if item.binary_modified_at is not None:
            if (now - item.binary_modified_at).days <= _RECENT_DAYS:
                risks.append(RiskDetail(
                    "Recently Modified", _RECENTLY_MODIFIED,
                    "Binary modified within last 7 days",
                ))

        if item.executable_path:
            try:
                mode = os.stat(item.executable_path).st_mode
            except OSError:
                mode = None
            if mode is not None and mode & stat.S_IWOTH:
                risks.append(RiskDetail(
                    "World-Writable", _WORLD_WRITABLE,
                    "Executable is world-writable",
                ))
        return risks
