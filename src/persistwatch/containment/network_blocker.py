"""
Network Blocker - per-binary outbound isolation with timed rollback

Two strategies, tried in order:

1. Application firewall (``socketfilterfw --blockapp``), per binary.
2. Packet filter anchor (``pfctl -a persistwatch_contain_<hash>``).
   Used only when the firewall step reports failure.

Each strategy's enable-and-apply steps run as one privileged invocation.
Rules with an expiry get a one-shot ``threading.Timer``; when it fires
the rule is removed and ``on_rule_expired`` is called so the owning
containment can update its state. Timers are cancelled whenever the rule
is unblocked by any other path.
"""

import hashlib
import logging
import os
import shlex
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..core.exceptions import ExternalToolFailedError, StoreError
from .containment_database import ContainmentDatabase
from .models import NetworkMethod, NetworkRule
from .privileged import CommandOutput, PrivilegedExecutor, default_executor, run_command

logger = logging.getLogger(__name__)

SOCKETFILTERFW = "/usr/libexec/ApplicationFirewall/socketfilterfw"
PFCTL = "/sbin/pfctl"

ANCHOR_PREFIX = "persistwatch"
DEFAULT_TIMEOUT = 86400.0
PF_BLOCK_RULE = "block drop out quick all"

_HASH_CHUNK = 1024 * 1024


def anchor_for(binary_path: str) -> str:
    """Packet-filter anchor name for a binary path."""
    digest = hashlib.sha256(binary_path.encode("utf-8")).hexdigest()
    return f"{ANCHOR_PREFIX}_contain_{digest[:12]}"


def hash_binary(path: Optional[str]) -> Optional[str]:
    """SHA-256 of a file's contents, or None if it can't be read."""
    if not path:
        return None
    sha = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_HASH_CHUNK), b""):
                sha.update(chunk)
    except OSError as exc:
        logger.debug("Cannot hash %s: %s", path, exc)
        return None
    return sha.hexdigest()


def _socketfilter_block_succeeded(output: str) -> bool:
    text = output.strip().lower()
    if not text:
        return True
    if "added" in text or "already" in text or "block" in text:
        return True
    return "error" not in text and "fail" not in text


def _socketfilter_unblock_succeeded(output: str) -> bool:
    text = output.lower()
    return "removed" in text or "unblocked" in text or "error" not in text


class NetworkBlocker:
    """Applies, tracks and expires per-binary network rules.

    Args:
        executor: Privileged executor for rule changes.
        database: Store for applied rules. Needed for restore/cleanup.
        on_rule_expired: Called with the rule after its expiry timer fires.
        query_runner: Unprivileged command runner used to verify rules.
    """

    def __init__(
        self,
        executor: Optional[PrivilegedExecutor] = None,
        database: Optional[ContainmentDatabase] = None,
        on_rule_expired: Optional[Callable[[NetworkRule], None]] = None,
        query_runner: Optional[Callable[[List[str]], CommandOutput]] = None,
    ):
        self.executor = executor or default_executor()
        self.database = database
        self.on_rule_expired = on_rule_expired
        self._query = query_runner or (lambda argv: run_command(argv, timeout=5))
        self._lock = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}
        self._rules: Dict[str, NetworkRule] = {}

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def block_binary(self, binary_path: str, timeout: Optional[float] = DEFAULT_TIMEOUT) -> NetworkRule:
        """Block outbound traffic for a binary.

        Args:
            binary_path: Executable to block.
            timeout: Seconds until the rule expires; None for no expiry.

        Raises:
            ExternalToolFailedError: Both strategies failed (carries the
                application firewall's output).
            PermissionDeniedError: Elevation was declined.
        """
        created_at = datetime.now()
        expires_at = created_at + timedelta(seconds=timeout) if timeout is not None else None

        try:
            self._block_with_socket_filter(binary_path)
            rule = NetworkRule(
                anchor=f"socketfilterfw:{os.path.basename(binary_path)}",
                binary_path=binary_path,
                method=NetworkMethod.SOCKETFILTERFW,
                created_at=created_at,
                expires_at=expires_at,
            )
        except ExternalToolFailedError as firewall_error:
            logger.warning("Application firewall block failed, trying pfctl: %s", firewall_error)
            anchor = anchor_for(binary_path)
            try:
                self._block_with_pfctl(anchor)
            except ExternalToolFailedError as pf_error:
                logger.error("pfctl block failed for %s: %s", binary_path, pf_error)
                raise firewall_error
            rule = NetworkRule(
                anchor=anchor,
                binary_path=binary_path,
                method=NetworkMethod.PFCTL,
                created_at=created_at,
                expires_at=expires_at,
            )

        with self._lock:
            self._rules[rule.id] = rule
        if expires_at is not None:
            self._start_expiration_timer(rule)

        logger.info("Blocked %s via %s", binary_path, rule.method.value)
        get_audit_logger().log_event(
            event_type=EventType.NETWORK_BLOCKED,
            severity=EventSeverity.ALERT,
            message=f"Network blocked for {binary_path} via {rule.method.value}",
            details=rule.to_dict(),
        )
        return rule

    def unblock(self, rule: NetworkRule) -> None:
        """Remove a rule using the strategy it was created with.

        The expiry timer is cancelled even when the unblock itself fails.
        """
        self._cancel_expiration_timer(rule.id)
        with self._lock:
            self._rules.pop(rule.id, None)

        if rule.method == NetworkMethod.PFCTL:
            self._unblock_with_pfctl(rule.anchor)
        else:
            self._unblock_with_socket_filter(rule.binary_path)

        logger.info("Unblocked %s (%s)", rule.binary_path, rule.method.value)
        get_audit_logger().log_event(
            event_type=EventType.NETWORK_UNBLOCKED,
            severity=EventSeverity.INFO,
            message=f"Network unblocked for {rule.binary_path}",
            details=rule.to_dict(),
        )

    def is_blocked(self, binary_path: str) -> bool:
        """Ask the OS whether a binary is currently blocked by either strategy."""
        pf = self._query([PFCTL, "-a", anchor_for(binary_path), "-s", "rules"])
        if "block" in pf.output:
            return True
        fw = self._query([SOCKETFILTERFW, "--getappblocked", binary_path])
        return "block" in fw.output.lower()

    @property
    def active_rules(self) -> List[NetworkRule]:
        """Rules applied by this process that have not been removed."""
        with self._lock:
            return list(self._rules.values())

    @property
    def pending_timer_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def get_active_anchors(self) -> List[str]:
        """Packet-filter anchors owned by this tool."""
        result = self._query([PFCTL, "-s", "Anchors"])
        return [
            line.strip() for line in result.stdout.splitlines()
            if line.strip().startswith(ANCHOR_PREFIX)
        ]

    def cleanup_expired_rules(self) -> int:
        """Unblock and forget stored rules whose expiry has passed.

        Returns the number of rules purged.
        """
        purged = 0
        for rule, identifier in self._stored_rules():
            if not rule.is_expired():
                continue
            logger.info("Cleaning up expired rule for %s", identifier)
            try:
                self.unblock(rule)
            except ExternalToolFailedError as exc:
                logger.warning("Failed to unblock expired rule %s: %s", rule.id, exc)
            self._forget(rule.id)
            get_audit_logger().log_containment_event(
                EventType.NETWORK_RULE_EXPIRED, identifier, "expired", details=rule.to_dict()
            )
            purged += 1
        return purged

    def restore_active_rules(self) -> Tuple[int, int]:
        """Startup routine: purge expired stored rules and re-apply the rest.

        A re-applied rule gets a new id and the remaining time of the old
        one; the stored row is replaced. A rule that cannot be re-applied
        stays stored so a later restart can retry it.

        Returns:
            (restored, purged)
        """
        purged = self.cleanup_expired_rules()
        restored = 0
        for rule, identifier in self._stored_rules():
            if rule.is_expired():
                continue
            try:
                new_rule = self.block_binary(rule.binary_path, timeout=rule.time_remaining())
            except Exception as exc:
                logger.error("Failed to restore rule for %s: %s", identifier, exc)
                continue
            self._forget(rule.id)
            if self.database is not None:
                self.database.save_network_rule(new_rule, identifier)
            restored += 1
            logger.info("Restored network rule for %s", identifier)
        return restored, purged

    def emergency_rollback_all(self) -> int:
        """Remove every rule this tool may have applied.

        Cancels all timers, flushes every owned pf anchor, unblocks every
        known firewall rule and clears stored rules. Individual failures
        are logged and skipped. Returns the number of rules/anchors removed.
        """
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            known = {rule.id: rule for rule in self._rules.values()}
            self._rules.clear()
        for timer in timers:
            timer.cancel()

        for rule, _identifier in self._stored_rules():
            known.setdefault(rule.id, rule)

        removed = 0
        flushed_anchors = set()
        for rule in known.values():
            try:
                if rule.method == NetworkMethod.PFCTL:
                    self._unblock_with_pfctl(rule.anchor)
                    flushed_anchors.add(rule.anchor)
                else:
                    self._unblock_with_socket_filter(rule.binary_path)
                removed += 1
            except ExternalToolFailedError as exc:
                logger.warning("Rollback could not remove %s: %s", rule.anchor, exc)

        for anchor in self.get_active_anchors():
            if anchor in flushed_anchors:
                continue
            try:
                self._unblock_with_pfctl(anchor)
                removed += 1
            except ExternalToolFailedError as exc:
                logger.warning("Rollback could not flush %s: %s", anchor, exc)

        if self.database is not None:
            try:
                self.database.clear_network_rules()
            except StoreError as exc:
                logger.error("Rollback could not clear stored rules: %s", exc)

        logger.warning("Emergency rollback completed: %d rules removed", removed)
        get_audit_logger().log_event(
            event_type=EventType.EMERGENCY_ROLLBACK,
            severity=EventSeverity.ALERT,
            message=f"Emergency network rollback removed {removed} rules",
            details={"removed": removed},
        )
        return removed

    def shutdown(self) -> None:
        """Cancel expiry timers without touching the applied rules."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    # ------------------------------------------------------------------
    # Application firewall
    # ------------------------------------------------------------------

    def _block_with_socket_filter(self, binary_path: str) -> None:
        command = (
            f"{SOCKETFILTERFW} --setglobalstate on 2>/dev/null; "
            f"{SOCKETFILTERFW} --blockapp {shlex.quote(binary_path)} 2>&1"
        )
        result = self.executor.run(command)
        if not _socketfilter_block_succeeded(result.output):
            raise ExternalToolFailedError("socketfilterfw", result.output)

    def _unblock_with_socket_filter(self, binary_path: str) -> None:
        command = f"{SOCKETFILTERFW} --unblockapp {shlex.quote(binary_path)} 2>&1"
        result = self.executor.run(command)
        if not _socketfilter_unblock_succeeded(result.output):
            raise ExternalToolFailedError("socketfilterfw", result.output)

    # ------------------------------------------------------------------
    # Packet filter
    # ------------------------------------------------------------------

    def _block_with_pfctl(self, anchor: str) -> None:
        command = (
            f"{PFCTL} -e 2>/dev/null; "
            f"echo {shlex.quote(PF_BLOCK_RULE)} | {PFCTL} -a {shlex.quote(anchor)} -f - 2>&1"
        )
        result = self.executor.run(command)
        verify = self._query([PFCTL, "-a", anchor, "-s", "rules"])
        if "block" not in verify.output:
            raise ExternalToolFailedError("pfctl", result.output)

    def _unblock_with_pfctl(self, anchor: str) -> None:
        result = self.executor.run(f"{PFCTL} -a {shlex.quote(anchor)} -F all 2>&1")
        verify = self._query([PFCTL, "-a", anchor, "-s", "rules"])
        if "block" in verify.output:
            raise ExternalToolFailedError("pfctl", result.output)

    # ------------------------------------------------------------------
    # Expiry timers
    # ------------------------------------------------------------------

    def _start_expiration_timer(self, rule: NetworkRule) -> None:
        delay = rule.time_remaining() or 0.0
        timer = threading.Timer(delay, self._expire, args=(rule,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(rule.id, None)
            self._timers[rule.id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _cancel_expiration_timer(self, rule_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(rule_id, None)
        if timer is not None:
            timer.cancel()

    def _expire(self, rule: NetworkRule) -> None:
        with self._lock:
            # a cancelled timer can still run if it was already firing
            if self._timers.get(rule.id) is not threading.current_thread():
                return
            del self._timers[rule.id]

        logger.info("Network rule expired for %s", rule.binary_path)
        try:
            self.unblock(rule)
        except Exception as exc:
            logger.error("Failed to remove expired rule %s: %s", rule.id, exc)

        if self.on_rule_expired is not None:
            try:
                self.on_rule_expired(rule)
            except Exception:
                logger.exception("on_rule_expired callback failed for %s", rule.id)

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    def _stored_rules(self) -> List[Tuple[NetworkRule, str]]:
        if self.database is None:
            return []
        try:
            return self.database.get_active_network_rules()
        except StoreError as exc:
            logger.error("Cannot read stored network rules: %s", exc)
            return []

    def _forget(self, rule_id: str) -> None:
        if self.database is None:
            return
        try:
            self.database.remove_network_rule(rule_id)
        except StoreError as exc:
            logger.error("Cannot remove stored network rule %s: %s", rule_id, exc)
