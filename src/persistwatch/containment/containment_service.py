"""
Containment Service - reversible isolation of persistence items

Containing an item means two independent steps:
    1. Disable persistence: back up the plist text, best-effort unload,
       rename the plist to ``<path>.contained``.
    2. Block network: per-binary outbound rule via NetworkBlocker, with
       an expiry (default 24h).

Either step may fail on its own. The result reports SUCCESS when both
worked, PARTIAL (with warnings) when one did, FAILURE when neither did.
Nothing is deleted: the binary stays in place and its SHA-256 is
recorded so substitution can be detected while contained.

Every attempted state change is written to the containment ledger and
the audit log, including failed and partially failed ones. Release always
clears local state even when a sub-step fails.

Operations on the same identifier are serialized by a per-identifier lock.
"""

import logging
import os
import shlex
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

import psutil

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..core.exceptions import (
    AlreadyContainedError,
    BinaryNotFoundError,
    ExternalToolFailedError,
    IntegrityMismatchError,
    NotContainedError,
    PersistWatchError,
    PlistNotFoundError,
    StoreError,
)
from ..core.config import MonitorConfiguration
from ..core.models import PersistenceCategory, PersistenceItem
from ..core.preferences import Preferences
from .containment_database import ContainmentDatabase
from .models import (
    ContainmentAction,
    ContainmentActionType,
    ContainmentResult,
    ContainmentState,
    ContainmentStatus,
    IntegrityStatus,
    NetworkRule,
)
from .network_blocker import DEFAULT_TIMEOUT, NetworkBlocker, hash_binary
from .privileged import PrivilegedExecutor, default_executor, run_command

logger = logging.getLogger(__name__)

CONTAINED_SUFFIX = ".contained"
LAUNCHCTL = "/bin/launchctl"


def contained_path_for(plist_path: str) -> str:
    return plist_path + CONTAINED_SUFFIX


def snapshot_processes(binary_path: Optional[str]) -> List[Dict[str, Any]]:
    """Running processes whose executable is ``binary_path``."""
    if not binary_path:
        return []
    matches = []
    for proc in psutil.process_iter(['pid', 'ppid', 'name', 'exe', 'username', 'create_time']):
        try:
            info = proc.info
            if info.get('exe') != binary_path:
                continue
            matches.append({
                'pid': info['pid'],
                'ppid': info.get('ppid'),
                'name': info.get('name'),
                'username': info.get('username'),
                'create_time': info.get('create_time'),
            })
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return matches


class ContainmentService:
    """Contain, release, extend and verify persistence items.

    Args:
        database: Containment ledger and network rule store.
        executor: Privileged executor for renames in protected directories.
        blocker: Network blocker; created from ``executor`` and ``database``
            when omitted. Its ``on_rule_expired`` is bound to this service.
        default_timeout: Containment duration when the caller gives none.
        process_snapshot: Returns running processes for a binary path.
    """

    def __init__(
        self,
        database: Optional[ContainmentDatabase] = None,
        executor: Optional[PrivilegedExecutor] = None,
        blocker: Optional[NetworkBlocker] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        process_snapshot: Optional[Callable[[Optional[str]], List[Dict[str, Any]]]] = None,
    ):
        self.database = database or ContainmentDatabase()
        self.executor = executor or default_executor()
        self.blocker = blocker or NetworkBlocker(executor=self.executor, database=self.database)
        self.blocker.on_rule_expired = self.handle_rule_expired
        self.default_timeout = default_timeout
        self._process_snapshot = process_snapshot or snapshot_processes

        self._lock = threading.Lock()
        self._item_locks: Dict[str, threading.Lock] = {}
        self._states: Dict[str, ContainmentState] = {}

        self.load_active_containments()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, identifier: str) -> Optional[ContainmentState]:
        with self._lock:
            return self._states.get(identifier)

    def is_contained(self, identifier: str) -> bool:
        with self._lock:
            state = self._states.get(identifier)
        return state is not None and state.is_contained

    @property
    def contained_items(self) -> Set[str]:
        with self._lock:
            return {k for k, v in self._states.items() if v.is_contained}

    def all_states(self) -> List[ContainmentState]:
        with self._lock:
            return list(self._states.values())

    def get_containment_history(self, identifier: str) -> List[ContainmentAction]:
        return self.database.get_containment_history(identifier)

    def item_for_state(self, identifier: str) -> Optional[PersistenceItem]:
        """Rebuild a minimal item from containment state.

        A contained item usually drops out of the baseline once its plist
        is renamed, so release and extend must work without a scan.
        """
        state = self.get_state(identifier)
        if state is None:
            return None
        try:
            category = PersistenceCategory(state.item_category)
        except ValueError:
            category = PersistenceCategory.LAUNCH_AGENTS
        return PersistenceItem(
            identifier=identifier,
            category=category,
            name=identifier,
            plist_path=state.plist_path,
            executable_path=state.binary_path,
        )

    # ------------------------------------------------------------------
    # Contain
    # ------------------------------------------------------------------

    def contain(self, item: PersistenceItem, timeout: Optional[float] = None) -> ContainmentResult:
        """Disable persistence and block network for an item."""
        effective_timeout = timeout if timeout is not None else self.default_timeout

        with self._item_lock(item.identifier):
            if self.get_state(item.identifier) is not None:
                return ContainmentResult.failure(AlreadyContainedError(item.identifier))

            binary_path = item.effective_executable_path
            binary_hash = hash_binary(binary_path)
            warnings: List[str] = []

            plist_backup: Optional[str] = None
            persistence_disabled = False
            if item.plist_path:
                try:
                    plist_backup = self._disable_persistence(item)
                    persistence_disabled = True
                except PersistWatchError as exc:
                    warnings.append(f"Persistence disable failed: {exc}")
            else:
                warnings.append("No plist found - skipping persistence disable")

            rule: Optional[NetworkRule] = None
            if binary_path:
                try:
                    rule = self._block_network(item, binary_path, effective_timeout)
                except PersistWatchError as exc:
                    warnings.append(f"Network block failed: {exc}")
            else:
                warnings.append("No binary found - skipping network block")

            if not persistence_disabled and rule is None:
                error = PersistWatchError("Both persistence disable and network block failed")
                get_audit_logger().log_containment_event(
                    EventType.CONTAINMENT_FAILED, item.identifier, ContainmentStatus.FAILED.value,
                    details={"warnings": warnings, "category": item.category.value},
                )
                return ContainmentResult.failure(error, warnings)

            status = ContainmentStatus.ACTIVE if (persistence_disabled and rule) else ContainmentStatus.PARTIAL
            now = datetime.now()
            expires_at = now + timedelta(seconds=effective_timeout)
            action = ContainmentAction(
                item_identifier=item.identifier,
                item_category=item.category.value,
                action_type=ContainmentActionType.CONTAIN,
                status=status,
                timestamp=now,
                binary_path=binary_path,
                binary_hash=binary_hash,
                plist_path=item.plist_path,
                plist_backup=plist_backup,
                network_rule_id=rule.id if rule else None,
                network_anchor=rule.anchor if rule else None,
                network_method=rule.method if rule else None,
                expires_at=expires_at,
                details={
                    "persistence_disabled": persistence_disabled,
                    "network_blocked": rule is not None,
                    "timeout": effective_timeout,
                    "warnings": warnings,
                    "processes": self._safe_process_snapshot(binary_path),
                },
            )

            try:
                saved = self.database.save_containment_action(action)
            except StoreError as exc:
                logger.error("Could not record containment of %s, rolling back: %s", item.identifier, exc)
                self._undo(item, persistence_disabled, plist_backup, rule)
                get_audit_logger().log_containment_event(
                    EventType.CONTAINMENT_FAILED, item.identifier, ContainmentStatus.FAILED.value,
                    details={"error": str(exc), "warnings": warnings},
                )
                return ContainmentResult.failure(exc, warnings)

            state = ContainmentState(
                item_identifier=item.identifier,
                item_category=item.category.value,
                persistence_disabled=persistence_disabled,
                network_blocked=rule is not None,
                network_rule=rule,
                binary_hash=binary_hash,
                binary_path=binary_path,
                plist_path=item.plist_path,
                plist_backup=plist_backup,
                contained_at=now,
                expires_at=expires_at,
            )
            with self._lock:
                self._states[item.identifier] = state

            get_audit_logger().log_containment_event(
                EventType.ITEM_CONTAINED, item.identifier, status.value, details=saved.to_dict()
            )
            logger.warning("Contained %s (%s)", item.identifier, status.value)

            if status == ContainmentStatus.PARTIAL:
                return ContainmentResult.partial(saved, warnings)
            return ContainmentResult.success(saved, warnings)

    def disable_persistence_only(self, item: PersistenceItem) -> ContainmentResult:
        with self._item_lock(item.identifier):
            if not item.plist_path:
                return ContainmentResult.failure(PlistNotFoundError())
            existing = self.get_state(item.identifier)
            if existing is not None and existing.persistence_disabled:
                return ContainmentResult.failure(AlreadyContainedError(item.identifier))

            try:
                plist_backup = self._disable_persistence(item)
            except PersistWatchError as exc:
                get_audit_logger().log_containment_event(
                    EventType.CONTAINMENT_FAILED, item.identifier, ContainmentStatus.FAILED.value,
                    details={"step": "persistence_disable", "error": str(exc)},
                )
                return ContainmentResult.failure(exc)

            action = ContainmentAction(
                item_identifier=item.identifier,
                item_category=item.category.value,
                action_type=ContainmentActionType.PERSISTENCE_DISABLE,
                status=ContainmentStatus.ACTIVE,
                binary_path=item.effective_executable_path,
                binary_hash=hash_binary(item.effective_executable_path),
                plist_path=item.plist_path,
                plist_backup=plist_backup,
                expires_at=existing.expires_at if existing else None,
                details={"processes": self._safe_process_snapshot(item.effective_executable_path)},
            )
            try:
                saved = self.database.save_containment_action(action)
            except StoreError as exc:
                self._undo(item, True, plist_backup, None)
                return ContainmentResult.failure(exc)

            with self._lock:
                state = self._states.get(item.identifier) or ContainmentState(
                    item_identifier=item.identifier,
                    item_category=item.category.value,
                    binary_hash=action.binary_hash,
                    binary_path=action.binary_path,
                )
                state.persistence_disabled = True
                state.plist_path = item.plist_path
                state.plist_backup = plist_backup
                self._states[item.identifier] = state

            get_audit_logger().log_containment_event(
                EventType.ITEM_CONTAINED, item.identifier, ContainmentStatus.ACTIVE.value,
                details=saved.to_dict(),
            )
            return ContainmentResult.success(saved)

    def block_network_only(self, item: PersistenceItem, timeout: Optional[float] = None) -> ContainmentResult:
        effective_timeout = timeout if timeout is not None else self.default_timeout
        binary_path = item.effective_executable_path

        with self._item_lock(item.identifier):
            if not binary_path:
                return ContainmentResult.failure(BinaryNotFoundError())
            existing = self.get_state(item.identifier)
            if existing is not None and existing.network_blocked:
                return ContainmentResult.failure(AlreadyContainedError(item.identifier))

            try:
                rule = self._block_network(item, binary_path, effective_timeout)
            except PersistWatchError as exc:
                get_audit_logger().log_containment_event(
                    EventType.CONTAINMENT_FAILED, item.identifier, ContainmentStatus.FAILED.value,
                    details={"step": "network_block", "error": str(exc)},
                )
                return ContainmentResult.failure(exc)

            binary_hash = existing.binary_hash if existing and existing.binary_hash else hash_binary(binary_path)
            action = ContainmentAction(
                item_identifier=item.identifier,
                item_category=item.category.value,
                action_type=ContainmentActionType.NETWORK_BLOCK,
                status=ContainmentStatus.ACTIVE,
                binary_path=binary_path,
                binary_hash=binary_hash,
                network_rule_id=rule.id,
                network_anchor=rule.anchor,
                network_method=rule.method,
                expires_at=rule.expires_at,
                details={"timeout": effective_timeout},
            )
            try:
                saved = self.database.save_containment_action(action)
            except StoreError as exc:
                self._undo(item, False, None, rule)
                return ContainmentResult.failure(exc)

            with self._lock:
                state = self._states.get(item.identifier) or ContainmentState(
                    item_identifier=item.identifier,
                    item_category=item.category.value,
                )
                state.network_blocked = True
                state.network_rule = rule
                state.binary_hash = binary_hash
                state.binary_path = binary_path
                state.expires_at = rule.expires_at
                self._states[item.identifier] = state

            get_audit_logger().log_containment_event(
                EventType.ITEM_CONTAINED, item.identifier, ContainmentStatus.ACTIVE.value,
                details=saved.to_dict(),
            )
            return ContainmentResult.success(saved)

    # ------------------------------------------------------------------
    # Release / extend / verify
    # ------------------------------------------------------------------

    def release(self, item: PersistenceItem) -> ContainmentResult:
        """Undo containment. Local state is cleared even if a sub-step fails."""
        with self._item_lock(item.identifier):
            state = self.get_state(item.identifier)
            if state is None:
                return ContainmentResult.failure(NotContainedError(item.identifier))

            warnings: List[str] = []

            if state.persistence_disabled:
                plist_path = state.plist_path or item.plist_path
                backup = state.plist_backup
                if backup is None:
                    try:
                        active = self.database.get_active_containment(item.identifier)
                        backup = active.plist_backup if active else None
                    except StoreError as exc:
                        logger.warning("Could not load plist backup for %s: %s", item.identifier, exc)
                try:
                    self._enable_persistence(item, plist_path, backup)
                except PersistWatchError as exc:
                    warnings.append(f"Failed to re-enable persistence: {exc}")

            rule = state.network_rule
            if rule is not None:
                try:
                    self.blocker.unblock(rule)
                except PersistWatchError as exc:
                    warnings.append(f"Failed to unblock network: {exc}")
                try:
                    self.database.remove_network_rule(rule.id)
                except StoreError as exc:
                    warnings.append(f"Failed to remove stored network rule: {exc}")

            with self._lock:
                self._states.pop(item.identifier, None)

            action = ContainmentAction(
                item_identifier=item.identifier,
                item_category=item.category.value,
                action_type=ContainmentActionType.RELEASE,
                status=ContainmentStatus.RELEASED,
                binary_path=item.effective_executable_path,
                binary_hash=state.binary_hash,
                plist_path=state.plist_path or item.plist_path,
                network_rule_id=rule.id if rule else None,
                network_anchor=rule.anchor if rule else None,
                network_method=rule.method if rule else None,
                details={"warnings": warnings},
            )
            try:
                saved = self.database.save_containment_action(action)
                self.database.close_open_containments(item.identifier, ContainmentStatus.RELEASED)
            except StoreError as exc:
                get_audit_logger().log_containment_event(
                    EventType.ITEM_RELEASED, item.identifier, ContainmentStatus.FAILED.value,
                    details={"error": str(exc), "warnings": warnings},
                )
                return ContainmentResult.failure(exc, warnings)

            get_audit_logger().log_containment_event(
                EventType.ITEM_RELEASED, item.identifier, ContainmentStatus.RELEASED.value,
                details=saved.to_dict(),
            )
            logger.info("Released %s", item.identifier)

            if warnings:
                return ContainmentResult.partial(saved, warnings)
            return ContainmentResult.success(saved)

    def extend_timeout(self, item: PersistenceItem, additional: Optional[float] = None) -> ContainmentResult:
        """Push the expiry back. An active network rule is replaced, not mutated."""
        additional = additional if additional is not None else self.default_timeout

        with self._item_lock(item.identifier):
            state = self.get_state(item.identifier)
            if state is None:
                return ContainmentResult.failure(NotContainedError(item.identifier))

            now = datetime.now()
            base = state.expires_at if state.expires_at and state.expires_at > now else now
            new_expires_at = base + timedelta(seconds=additional)
            warnings: List[str] = []

            old_rule = state.network_rule
            if old_rule is not None:
                try:
                    self.blocker.unblock(old_rule)
                except PersistWatchError as exc:
                    warnings.append(f"Failed to remove previous network rule: {exc}")
                self._remove_stored_rule(old_rule.id)

                remaining = max(0.0, (new_expires_at - now).total_seconds())
                try:
                    new_rule = self._block_network(item, old_rule.binary_path, remaining)
                except PersistWatchError as exc:
                    warnings.append(f"Network block failed: {exc}")
                    new_rule = None
                with self._lock:
                    state.network_rule = new_rule
                    state.network_blocked = new_rule is not None

            with self._lock:
                state.expires_at = new_expires_at
                still_contained = state.is_contained
                if not still_contained:
                    self._states.pop(item.identifier, None)

            rule = state.network_rule
            action = ContainmentAction(
                item_identifier=item.identifier,
                item_category=item.category.value,
                action_type=ContainmentActionType.EXTEND_TIMEOUT,
                status=state.status if still_contained else ContainmentStatus.FAILED,
                binary_path=item.effective_executable_path,
                binary_hash=state.binary_hash,
                plist_path=state.plist_path,
                network_rule_id=rule.id if rule else None,
                network_anchor=rule.anchor if rule else None,
                network_method=rule.method if rule else None,
                expires_at=new_expires_at,
                details={"additional": additional, "warnings": warnings},
            )
            try:
                saved = self.database.save_containment_action(action)
                if still_contained:
                    self.database.update_open_expiry(item.identifier, new_expires_at)
                else:
                    self.database.close_open_containments(item.identifier, ContainmentStatus.FAILED)
            except StoreError as exc:
                return ContainmentResult.failure(exc, warnings)

            get_audit_logger().log_containment_event(
                EventType.TIMEOUT_EXTENDED, item.identifier, action.status.value, details=saved.to_dict()
            )

            if not still_contained:
                return ContainmentResult.failure(
                    ExternalToolFailedError("network", "; ".join(warnings)), warnings
                )
            if warnings:
                return ContainmentResult.partial(saved, warnings)
            return ContainmentResult.success(saved)

    def verify_binary_integrity(self, item: PersistenceItem) -> IntegrityStatus:
        """Compare the binary's current hash with the one recorded at containment."""
        state = self.get_state(item.identifier)
        if state is None or not state.binary_hash:
            return IntegrityStatus.UNAVAILABLE
        binary_path = item.effective_executable_path or state.binary_path
        current = hash_binary(binary_path)
        if current is None:
            return IntegrityStatus.UNAVAILABLE
        if current == state.binary_hash:
            return IntegrityStatus.MATCH

        mismatch = IntegrityMismatchError(binary_path, state.binary_hash, current)
        logger.error("%s", mismatch)
        get_audit_logger().log_event(
            event_type=EventType.INTEGRITY_MISMATCH,
            severity=EventSeverity.CRITICAL,
            message=str(mismatch),
            details={
                "item_identifier": item.identifier,
                "binary_path": binary_path,
                "expected": state.binary_hash,
                "actual": current,
            },
        )
        return IntegrityStatus.MISMATCH

    # ------------------------------------------------------------------
    # Startup and expiry
    # ------------------------------------------------------------------

    def load_active_containments(self) -> int:
        """Rebuild in-memory state from the ledger.

        An open action whose expiry has passed loses only its network half:
        a disabled plist stays contained until released. Network-only
        actions past their expiry are marked expired. Stored rules that
        have expired are not attached. Returns the number of items loaded.
        """
        try:
            actions = self.database.get_all_active_containments()
        except StoreError as exc:
            logger.error("Error loading active containments: %s", exc)
            return 0

        now = datetime.now()
        states: Dict[str, ContainmentState] = {}
        expired: Set[str] = set()
        for action in actions:
            identifier = action.item_identifier
            disables_persistence = action.action_type == ContainmentActionType.PERSISTENCE_DISABLE or (
                action.action_type == ContainmentActionType.CONTAIN
                and action.details.get("persistence_disabled", action.plist_backup is not None)
            )
            action_expired = action.expires_at is not None and now > action.expires_at
            if action_expired and not disables_persistence:
                expired.add(identifier)
                continue

            state = states.get(identifier)
            if state is None:
                state = ContainmentState(
                    item_identifier=identifier,
                    item_category=action.item_category,
                    contained_at=action.timestamp,
                )
                states[identifier] = state

            if disables_persistence:
                state.persistence_disabled = True
                state.plist_path = action.plist_path
                state.plist_backup = action.plist_backup
            state.binary_hash = state.binary_hash or action.binary_hash
            state.binary_path = state.binary_path or action.binary_path
            if action.expires_at is not None and not action_expired:
                state.expires_at = max(filter(None, [state.expires_at, action.expires_at]))

        for identifier in expired - set(states):
            try:
                self.database.close_open_containments(identifier, ContainmentStatus.EXPIRED)
            except StoreError as exc:
                logger.error("Could not expire containment for %s: %s", identifier, exc)

        for identifier, state in states.items():
            try:
                rule = self.database.get_network_rule(identifier)
            except StoreError as exc:
                logger.error("Could not load network rule for %s: %s", identifier, exc)
                rule = None
            if rule is not None and rule.is_expired(now):
                rule = None
            state.network_rule = rule
            state.network_blocked = rule is not None

        with self._lock:
            self._states.update({k: v for k, v in states.items() if v.is_contained})
            count = len(self._states)

        logger.info("Loaded %d active containments", count)
        return count

    def restore(self) -> Dict[str, int]:
        """Startup routine: re-apply stored network rules and reload state."""
        restored, purged = self.blocker.restore_active_rules()
        loaded = self.load_active_containments()
        return {"restored_rules": restored, "purged_rules": purged, "loaded": loaded}

    def handle_rule_expired(self, rule: NetworkRule) -> None:
        """Clear the network half of a containment after its rule expired."""
        with self._lock:
            identifier = next(
                (k for k, v in self._states.items() if v.network_rule and v.network_rule.id == rule.id),
                None,
            )
        self._remove_stored_rule(rule.id)
        if identifier is None:
            return

        with self._item_lock(identifier):
            with self._lock:
                state = self._states.get(identifier)
                if state is None or state.network_rule is None or state.network_rule.id != rule.id:
                    return
                state.network_blocked = False
                state.network_rule = None
                still_contained = state.is_contained
                if not still_contained:
                    self._states.pop(identifier, None)

            if not still_contained:
                try:
                    self.database.close_open_containments(identifier, ContainmentStatus.EXPIRED)
                except StoreError as exc:
                    logger.error("Could not expire containment for %s: %s", identifier, exc)

            get_audit_logger().log_containment_event(
                EventType.NETWORK_RULE_EXPIRED,
                identifier,
                ContainmentStatus.EXPIRED.value if not still_contained else ContainmentStatus.PARTIAL.value,
                details=rule.to_dict(),
            )

    def emergency_rollback(self) -> int:
        """Drop every network rule and forget the network half of all states."""
        removed = self.blocker.emergency_rollback_all()
        with self._lock:
            for state in self._states.values():
                state.network_blocked = False
                state.network_rule = None
            dropped = [k for k, v in self._states.items() if not v.is_contained]
            for identifier in dropped:
                del self._states[identifier]
        for identifier in dropped:
            try:
                self.database.close_open_containments(identifier, ContainmentStatus.RELEASED)
            except StoreError as exc:
                logger.error("Could not close containment for %s: %s", identifier, exc)
        return removed

    def shutdown(self) -> None:
        self.blocker.shutdown()

    # ------------------------------------------------------------------
    # Persistence disable / enable
    # ------------------------------------------------------------------

    def _disable_persistence(self, item: PersistenceItem) -> Optional[str]:
        """Rename the plist away. Returns its original text (None if unreadable)."""
        plist_path = item.plist_path
        if not plist_path or not os.path.exists(plist_path):
            raise PlistNotFoundError(plist_path)

        try:
            with open(plist_path, "r", encoding="utf-8") as f:
                backup: Optional[str] = f.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not back up %s: %s", plist_path, exc)
            backup = None

        if item.is_loaded:
            self._unload(item)

        self._move(plist_path, contained_path_for(plist_path))
        get_audit_logger().log_containment_event(
            EventType.PERSISTENCE_DISABLED, item.identifier, "renamed",
            details={"plist_path": plist_path, "has_backup": backup is not None},
        )
        return backup

    def _enable_persistence(self, item: PersistenceItem, plist_path: Optional[str], backup: Optional[str]) -> None:
        if not plist_path:
            raise PlistNotFoundError()
        contained = contained_path_for(plist_path)

        if os.path.exists(contained):
            self._move(contained, plist_path)
        elif backup is not None:
            try:
                with open(plist_path, "w", encoding="utf-8") as f:
                    f.write(backup)
            except OSError as exc:
                raise ExternalToolFailedError("write", f"backup restore failed: {exc}") from exc
        else:
            raise PlistNotFoundError(contained)

        get_audit_logger().log_containment_event(
            EventType.PERSISTENCE_ENABLED, item.identifier, "restored", details={"plist_path": plist_path}
        )

    def _move(self, src: str, dst: str) -> None:
        directory = os.path.dirname(src) or "."
        if os.access(directory, os.W_OK):
            try:
                os.rename(src, dst)
            except OSError as exc:
                raise ExternalToolFailedError("mv", str(exc)) from exc
            return

        result = self.executor.run(f"/bin/mv {shlex.quote(src)} {shlex.quote(dst)}")
        if result.returncode != 0:
            raise ExternalToolFailedError("mv", result.output)

    def _unload(self, item: PersistenceItem) -> None:
        """Best-effort ``launchctl bootout``. Failure is logged, never raised."""
        if item.category == PersistenceCategory.LAUNCH_DAEMONS:
            command = f"{LAUNCHCTL} bootout system {shlex.quote(item.plist_path)}"
            try:
                result = self.executor.run(command)
            except PersistWatchError as exc:
                logger.warning("Failed to unload %s: %s", item.identifier, exc)
                return
        else:
            result = run_command([LAUNCHCTL, "bootout", f"gui/{os.getuid()}", item.plist_path], timeout=10)
        # bootout can report an error even when the job was unloaded
        if result.returncode != 0:
            logger.warning("launchctl bootout for %s returned %d: %s",
                           item.identifier, result.returncode, result.output.strip())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _block_network(self, item: PersistenceItem, binary_path: str, timeout: float) -> NetworkRule:
        if not os.path.exists(binary_path):
            raise BinaryNotFoundError(binary_path)
        rule = self.blocker.block_binary(binary_path, timeout=timeout)
        try:
            self.database.save_network_rule(rule, item.identifier)
        except StoreError as exc:
            # the rule is live and has its own expiry timer
            logger.error("Could not store network rule for %s: %s", item.identifier, exc)
        return rule

    def _remove_stored_rule(self, rule_id: str) -> None:
        try:
            self.database.remove_network_rule(rule_id)
        except StoreError as exc:
            logger.error("Could not remove stored network rule %s: %s", rule_id, exc)

    def _undo(
        self,
        item: PersistenceItem,
        persistence_disabled: bool,
        plist_backup: Optional[str],
        rule: Optional[NetworkRule],
    ) -> None:
        if persistence_disabled:
            try:
                self._enable_persistence(item, item.plist_path, plist_backup)
            except PersistWatchError as exc:
                logger.error("Rollback could not re-enable %s: %s", item.identifier, exc)
        if rule is not None:
            try:
                self.blocker.unblock(rule)
            except PersistWatchError as exc:
                logger.error("Rollback could not unblock %s: %s", item.identifier, exc)
            self._remove_stored_rule(rule.id)

    def _safe_process_snapshot(self, binary_path: Optional[str]) -> List[Dict[str, Any]]:
        try:
            return self._process_snapshot(binary_path)
        except psutil.Error as exc:
            logger.debug("Process snapshot failed for %s: %s", binary_path, exc)
            return []

    @contextmanager
    def _item_lock(self, identifier: str) -> Iterator[None]:
        with self._lock:
            lock = self._item_locks.setdefault(identifier, threading.Lock())
        with lock:
            yield


# Global service instance
_service: Optional[ContainmentService] = None


def get_containment_service() -> ContainmentService:
    """Shared service, with its default timeout taken from the stored configuration."""
    global _service
    if _service is None:
        config = MonitorConfiguration.load(Preferences())
        _service = ContainmentService(default_timeout=config.default_containment_timeout)
    return _service


def set_containment_service(service: Optional[ContainmentService]) -> None:
    global _service
    _service = service
