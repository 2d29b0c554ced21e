"""
Containment Data Models
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.db import to_iso


class NetworkMethod(str, Enum):
    """Network blocking strategy, in priority order"""
    SOCKETFILTERFW = "socketfilterfw"   # primary: application firewall
    PFCTL = "pfctl"                     # fallback: packet filter anchor


class ContainmentActionType(str, Enum):
    CONTAIN = "contain"
    RELEASE = "release"
    PERSISTENCE_DISABLE = "persistence_disable"
    PERSISTENCE_ENABLE = "persistence_enable"
    NETWORK_BLOCK = "network_block"
    NETWORK_UNBLOCK = "network_unblock"
    EXTEND_TIMEOUT = "extend_timeout"


class ContainmentStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    EXPIRED = "expired"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class NetworkRule:
    """Outbound block for one binary"""
    anchor: str
    binary_path: str
    method: NetworkMethod
    created_at: datetime = field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now()) >= self.expires_at

    def time_remaining(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds until expiry (never negative), None for no expiry."""
        if self.expires_at is None:
            return None
        return max(0.0, (self.expires_at - (now or datetime.now())).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "anchor": self.anchor,
            "binary_path": self.binary_path,
            "method": self.method.value,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
        }


@dataclass
class ContainmentAction:
    """Append-only audit record of a containment state change"""
    item_identifier: str
    item_category: str
    action_type: ContainmentActionType
    status: ContainmentStatus
    timestamp: datetime = field(default_factory=datetime.now)
    binary_path: Optional[str] = None
    binary_hash: Optional[str] = None
    plist_path: Optional[str] = None
    plist_backup: Optional[str] = None
    network_rule_id: Optional[str] = None
    network_anchor: Optional[str] = None
    network_method: Optional[NetworkMethod] = None
    expires_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_identifier": self.item_identifier,
            "item_category": self.item_category,
            "action_type": self.action_type.value,
            "timestamp": to_iso(self.timestamp),
            "binary_path": self.binary_path,
            "binary_hash": self.binary_hash,
            "plist_path": self.plist_path,
            "has_plist_backup": self.plist_backup is not None,
            "network_rule_id": self.network_rule_id,
            "network_anchor": self.network_anchor,
            "network_method": self.network_method.value if self.network_method else None,
            "status": self.status.value,
            "expires_at": to_iso(self.expires_at),
            "details": self.details,
        }


@dataclass
class ContainmentState:
    """Live containment of one item; present only while contained"""
    item_identifier: str
    item_category: str
    persistence_disabled: bool = False
    network_blocked: bool = False
    network_rule: Optional[NetworkRule] = None
    binary_hash: Optional[str] = None
    binary_path: Optional[str] = None
    plist_path: Optional[str] = None
    plist_backup: Optional[str] = None
    contained_at: datetime = field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None

    @property
    def is_contained(self) -> bool:
        return self.persistence_disabled or self.network_blocked

    @property
    def status(self) -> ContainmentStatus:
        if self.persistence_disabled and self.network_blocked:
            return ContainmentStatus.ACTIVE
        return ContainmentStatus.PARTIAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_identifier": self.item_identifier,
            "item_category": self.item_category,
            "is_contained": self.is_contained,
            "persistence_disabled": self.persistence_disabled,
            "network_blocked": self.network_blocked,
            "network_rule": self.network_rule.to_dict() if self.network_rule else None,
            "binary_path": self.binary_path,
            "binary_hash": self.binary_hash,
            "plist_path": self.plist_path,
            "contained_at": to_iso(self.contained_at),
            "expires_at": to_iso(self.expires_at),
            "status": self.status.value,
        }


class ResultKind(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass
class ContainmentResult:
    """Tagged outcome of a containment operation"""
    kind: ResultKind
    action: Optional[ContainmentAction] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @classmethod
    def success(cls, action: ContainmentAction, warnings: Optional[List[str]] = None) -> "ContainmentResult":
        return cls(ResultKind.SUCCESS, action, list(warnings or []))

    @classmethod
    def partial(cls, action: ContainmentAction, warnings: List[str]) -> "ContainmentResult":
        return cls(ResultKind.PARTIAL, action, list(warnings))

    @classmethod
    def failure(cls, error: Exception, warnings: Optional[List[str]] = None) -> "ContainmentResult":
        return cls(ResultKind.FAILURE, None, list(warnings or []), error)

    @property
    def ok(self) -> bool:
        return self.kind != ResultKind.FAILURE

    @property
    def status(self) -> Optional[ContainmentStatus]:
        return self.action.status if self.action else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.kind.value,
            "action": self.action.to_dict() if self.action else None,
            "warnings": self.warnings,
            "error": str(self.error) if self.error else None,
        }


class IntegrityStatus(str, Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    UNAVAILABLE = "unavailable"
