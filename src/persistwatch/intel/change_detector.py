# Intel Module - Baseline Change Detector
#
# Diffs two snapshots of one category (baseline vs current) into Change
# records and scores each change for relevance (0-100). Relevance is
# separate from an item's intrinsic risk score: it answers "how urgently
# should a human look at this change", and gates notifications.
#
# Pure; never raises on incomplete item data.

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..core.models import PersistenceCategory, PersistenceItem, TrustLevel


class ChangeType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    ENABLED = "enabled"
    DISABLED = "disabled"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class ChangeDetail:
    field: str
    old_value: str
    new_value: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "old_value": self.old_value, "new_value": self.new_value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeDetail":
        return cls(
            field=data["field"],
            old_value=data.get("old_value", ""),
            new_value=data.get("new_value", ""),
        )


@dataclass
class Change:
    """One detected difference between baseline and current state.

    For removals ``item`` is the baseline snapshot of the removed entry.
    """

    type: ChangeType
    category: PersistenceCategory
    item: Optional[PersistenceItem] = None
    details: List[ChangeDetail] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def item_identifier(self) -> str:
        return self.item.identifier if self.item else ""

    @property
    def item_name(self) -> str:
        return self.item.name if self.item else "Unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "category": self.category.value,
            "item_identifier": self.item_identifier,
            "item_name": self.item_name,
            "details": [d.to_dict() for d in self.details],
            "timestamp": self.timestamp.isoformat(),
        }


# Category sensitivity: kernel-level and root-level mechanisms score
# highest, indexing/cosmetic plugins lowest.
CATEGORY_SENSITIVITY: Dict[PersistenceCategory, int] = {
    PersistenceCategory.LAUNCH_DAEMONS: 25,
    PersistenceCategory.LAUNCH_AGENTS: 20,
    PersistenceCategory.KERNEL_EXTENSIONS: 30,
    PersistenceCategory.SYSTEM_EXTENSIONS: 25,
    PersistenceCategory.PRIVILEGED_HELPERS: 25,
    PersistenceCategory.AUTHORIZATION_PLUGINS: 25,
    PersistenceCategory.LOGIN_ITEMS: 15,
    PersistenceCategory.CRON_JOBS: 20,
    PersistenceCategory.SHELL_STARTUP_FILES: 15,
    PersistenceCategory.TCC_ACCESSIBILITY: 20,
    PersistenceCategory.DYLIB_HIJACKING: 25,
    PersistenceCategory.BTM_DATABASE: 15,
    PersistenceCategory.MDM_PROFILES: 20,
    PersistenceCategory.PERIODIC_SCRIPTS: 15,
    PersistenceCategory.LOGIN_HOOKS: 15,
    PersistenceCategory.SPOTLIGHT_IMPORTERS: 10,
    PersistenceCategory.QUICKLOOK_PLUGINS: 10,
    PersistenceCategory.DIRECTORY_SERVICES_PLUGINS: 15,
    PersistenceCategory.FINDER_SYNC_EXTENSIONS: 10,
    PersistenceCategory.APPLICATION_SUPPORT: 10,
}

TRUST_ADJUSTMENT: Dict[TrustLevel, int] = {
    TrustLevel.SUSPICIOUS: 30,
    TrustLevel.UNSIGNED: 25,
    TrustLevel.SIGNED: 5,
    TrustLevel.KNOWN_VENDOR: 0,
    TrustLevel.APPLE: -20,
    TrustLevel.UNKNOWN: 10,
}

_BASE_RELEVANCE: Dict[ChangeType, int] = {
    ChangeType.ADDED: 60,
    ChangeType.REMOVED: 40,
    ChangeType.MODIFIED: 30,
    ChangeType.ENABLED: 50,
    ChangeType.DISABLED: 20,
}

_TIMESTAMP_TOLERANCE_SECONDS = 1.0


def _bool_text(value: Optional[bool]) -> str:
    return "true" if value else "false"


def _format_date(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat()


def _index(items: Iterable[PersistenceItem]) -> Dict[str, PersistenceItem]:
    indexed: Dict[str, PersistenceItem] = {}
    for item in items:
        # duplicate identifiers: first occurrence wins
        indexed.setdefault(item.identifier, item)
    return indexed


class ChangeDetector:
    """Detects and scores changes between baseline and current state."""

    def detect_changes(
        self,
        baseline: Iterable[PersistenceItem],
        current: Iterable[PersistenceItem],
        category: PersistenceCategory,
    ) -> List[Change]:
        baseline_map = _index(baseline)
        current_map = _index(current)
        now = datetime.now()
        changes: List[Change] = []

        for identifier, item in current_map.items():
            if identifier not in baseline_map:
                changes.append(Change(
                    type=ChangeType.ADDED,
                    category=category,
                    item=item,
                    details=[ChangeDetail("New Item", "", item.name)],
                    timestamp=now,
                ))

        for identifier, item in baseline_map.items():
            if identifier not in current_map:
                changes.append(Change(
                    type=ChangeType.REMOVED,
                    category=category,
                    item=item,
                    details=[ChangeDetail("Removed Item", item.name, "")],
                    timestamp=now,
                ))

        for identifier, current_item in current_map.items():
            baseline_item = baseline_map.get(identifier)
            if baseline_item is None:
                continue
            details = self.detect_item_changes(baseline_item, current_item)
            if not details:
                continue
            if any(d.field == "isEnabled" for d in details):
                change_type = ChangeType.ENABLED if current_item.is_enabled else ChangeType.DISABLED
            else:
                change_type = ChangeType.MODIFIED
            changes.append(Change(
                type=change_type,
                category=category,
                item=current_item,
                details=details,
                timestamp=now,
            ))

        return changes

    def detect_item_changes(
        self, baseline: PersistenceItem, current: PersistenceItem
    ) -> List[ChangeDetail]:
        details: List[ChangeDetail] = []

        if baseline.is_enabled != current.is_enabled:
            details.append(ChangeDetail(
                "isEnabled", _bool_text(baseline.is_enabled), _bool_text(current.is_enabled)
            ))

        if baseline.is_loaded != current.is_loaded:
            details.append(ChangeDetail(
                "isLoaded", _bool_text(baseline.is_loaded), _bool_text(current.is_loaded)
            ))

        if baseline.executable_path != current.executable_path:
            details.append(ChangeDetail(
                "executablePath",
                baseline.executable_path or "none",
                current.executable_path or "none",
            ))

        for field_name, attr in (
            ("binaryModifiedAt", "binary_modified_at"),
            ("plistModifiedAt", "plist_modified_at"),
        ):
            old = getattr(baseline, attr)
            new = getattr(current, attr)
            if old is None or new is None:
                continue
            if abs((old - new).total_seconds()) > _TIMESTAMP_TOLERANCE_SECONDS:
                details.append(ChangeDetail(field_name, _format_date(old), _format_date(new)))

        if baseline.run_at_load != current.run_at_load:
            details.append(ChangeDetail(
                "runAtLoad", _bool_text(baseline.run_at_load), _bool_text(current.run_at_load)
            ))

        if baseline.keep_alive != current.keep_alive:
            details.append(ChangeDetail(
                "keepAlive", _bool_text(baseline.keep_alive), _bool_text(current.keep_alive)
            ))

        if list(baseline.program_arguments) != list(current.program_arguments):
            details.append(ChangeDetail(
                "programArguments",
                " ".join(baseline.program_arguments) or "none",
                " ".join(current.program_arguments) or "none",
            ))

        if baseline.trust_level != current.trust_level:
            details.append(ChangeDetail(
                "trustLevel", baseline.trust_level.value, current.trust_level.value
            ))

        return details

    def calculate_relevance(self, change: Change) -> int:
        score = _BASE_RELEVANCE[change.type]
        score += CATEGORY_SENSITIVITY.get(change.category, 10)

        item = change.item
        if item is not None:
            score += TRUST_ADJUSTMENT.get(item.trust_level, 10)
            if item.risk_score is not None and item.risk_score > 50:
                score += 15
            if item.signature_info is None:
                score += 10

        fields = {d.field for d in change.details}
        if "executablePath" in fields:
            score += 15
        if "programArguments" in fields:
            score += 10
        if any(d.field == "runAtLoad" and d.new_value == "true" for d in change.details):
            score += 10

        return min(100, max(0, score))

    # ── Summaries ────────────────────────────────────────────────────

    def summarize_changes(self, changes: Iterable[Change]) -> str:
        changes = list(changes)
        added = sum(1 for c in changes if c.type == ChangeType.ADDED)
        removed = sum(1 for c in changes if c.type == ChangeType.REMOVED)
        modified = len(changes) - added - removed

        parts = []
        if added:
            parts.append(f"+{added} added")
        if removed:
            parts.append(f"-{removed} removed")
        if modified:
            parts.append(f"~{modified} modified")
        return ", ".join(parts) if parts else "No changes"

    def filter_by_relevance(self, changes: Iterable[Change], minimum: int) -> List[Change]:
        return [c for c in changes if self.calculate_relevance(c) >= minimum]

    def sort_by_relevance(self, changes: Iterable[Change]) -> List[Change]:
        return sorted(changes, key=self.calculate_relevance, reverse=True)
