# Guardian Module - Persistence Monitor
#
# Top-level state machine tying the detection pipeline together:
#
#   watchers -> per-category rescan debounce -> targeted scan
#     -> trust verify + risk score -> diff against baseline
#     -> relevance -> history + notifications -> baseline update
#
# States: stopped -> starting -> running -> stopping -> stopped, with
# error(message) reachable from starting. Only stopped/error may start;
# only running may stop.
#
# Rescans are keyed by category: a burst of filesystem events collapses
# into one pending timer (cancel-and-replace), and at most one rescan of
# a category executes at a time. Scans run outside every lock.

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..core.config import MonitorConfiguration
from ..core.exceptions import StoreError
from ..core.models import PersistenceCategory, PersistenceItem
from ..intel.change_detector import Change, ChangeDetector
from ..intel.risk_scorer import RiskScorer
from .baseline import MonitorBaseline
from .directory_watcher import DirectoryChangeEvent, DirectoryWatcherManager
from .monitor_database import ChangeHistoryEntry, MonitorDatabase
from .notifications import NotificationDispatcher, NotificationSink
from .scanner import Scanner, TrustVerifier, verify_all

logger = logging.getLogger(__name__)

# Delay before an auto-started monitor begins, so the rest of the
# process finishes initializing first.
AUTO_START_GRACE_SECONDS = 2.0


class MonitorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class PersistenceMonitor:
    """Orchestrates watchers, rescans, change scoring and notifications.

    Args:
        scanner: Produces items for all categories or one category.
        config: Settings read at call time (categories, intervals, threshold).
        database: Baseline + change history persistence. In-memory baseline
            and no history when omitted.
        notifier: Notification sink (default NotificationDispatcher).
        trust_verifier: Attaches signing verdicts to scanned items.
        watcher_manager: Override watcher construction (for testing).
        items_provider: Returns already-scanned items to seed the baseline
            without running a full scan.
        state_listener: Called with (state, error_message) on every transition.
        items_listener: Called with (category, items) after each rescan.
    """

    def __init__(
        self,
        scanner: Scanner,
        config: Optional[MonitorConfiguration] = None,
        database: Optional[MonitorDatabase] = None,
        notifier: Optional[NotificationSink] = None,
        trust_verifier: Optional[TrustVerifier] = None,
        risk_scorer: Optional[RiskScorer] = None,
        change_detector: Optional[ChangeDetector] = None,
        watcher_manager: Optional[DirectoryWatcherManager] = None,
        items_provider: Optional[Callable[[], List[PersistenceItem]]] = None,
        state_listener: Optional[Callable[[MonitorState, Optional[str]], None]] = None,
        items_listener: Optional[Callable[[PersistenceCategory, List[PersistenceItem]], None]] = None,
    ):
        self.scanner = scanner
        self.config = config or MonitorConfiguration()
        self.database = database
        self.notifier = notifier or NotificationDispatcher(self.config)
        self.trust_verifier = trust_verifier
        self.risk_scorer = risk_scorer or RiskScorer()
        self.change_detector = change_detector or ChangeDetector()
        self.watcher_manager = watcher_manager or DirectoryWatcherManager(self.config)
        self.items_provider = items_provider
        self.state_listener = state_listener
        self.items_listener = items_listener

        self.baseline = MonitorBaseline(database)

        self._state = MonitorState.STOPPED
        self._error_message: Optional[str] = None
        self._state_lock = threading.Lock()

        # Rescan scheduling state, separate from the watcher's own lock
        self._scan_lock = threading.Lock()
        self._pending_scans: Dict[PersistenceCategory, threading.Timer] = {}
        self._in_flight: Set[PersistenceCategory] = set()
        self._dirty: Set[PersistenceCategory] = set()

        self._auto_start_timer: Optional[threading.Timer] = None
        self._monitored_categories: List[PersistenceCategory] = []

        self.change_count = 0
        self.unacknowledged_count = self._load_unacknowledged_count()
        self.last_change: Optional[Change] = None
        self.last_event_at: Optional[datetime] = None
        self.scan_count = 0

    # ── State ────────────────────────────────────────────────────────

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    @property
    def is_running(self) -> bool:
        return self._state == MonitorState.RUNNING

    @property
    def monitored_categories(self) -> List[PersistenceCategory]:
        return list(self._monitored_categories)

    @property
    def status_description(self) -> str:
        state = self._state
        if state == MonitorState.STOPPED:
            return "Stopped"
        if state == MonitorState.STARTING:
            return "Starting..."
        if state == MonitorState.RUNNING:
            return f"Monitoring {len(self._monitored_categories)} categories"
        if state == MonitorState.STOPPING:
            return "Stopping..."
        return f"Error: {self._error_message}"

    def _set_state(self, state: MonitorState, error: Optional[str] = None) -> None:
        self._state = state
        self._error_message = error
        listener = self.state_listener
        if listener is not None:
            try:
                listener(state, error)
            except Exception:
                logger.exception("State listener failed")

    # ── Lifecycle ────────────────────────────────────────────────────

    def start_monitoring(self) -> bool:
        """Start watchers and move to RUNNING. Returns False if not started."""
        with self._state_lock:
            if self._state not in (MonitorState.STOPPED, MonitorState.ERROR):
                logger.warning("Cannot start monitor from state %s", self._state.value)
                return False
            self._set_state(MonitorState.STARTING)

        logger.info("Starting persistence monitoring")
        try:
            self._request_notification_permission()

            if not self.baseline.exists:
                self._create_initial_baseline()

            categories = sorted(self.config.monitorable_categories(), key=lambda c: c.value)
            started = self.watcher_manager.start_all(categories)
            self.watcher_manager.on_change_detected = self.process_event
            self._monitored_categories = started
        except Exception as exc:
            logger.exception("Failed to start monitoring")
            self.watcher_manager.stop_all()
            self._set_state(MonitorState.ERROR, str(exc))
            get_audit_logger().log_event(
                event_type=EventType.MONITOR_ERROR,
                severity=EventSeverity.CRITICAL,
                message=f"Monitor failed to start: {exc}",
                details={"error": str(exc)},
            )
            return False

        self.config.monitoring_enabled = True
        self._set_state(MonitorState.RUNNING)
        logger.info("Monitoring %d categories", len(started))
        get_audit_logger().log_event(
            event_type=EventType.MONITOR_STARTED,
            severity=EventSeverity.INFO,
            message=f"Persistence monitoring started ({len(started)} categories)",
            details={"categories": [c.value for c in started]},
        )
        return True

    def stop_monitoring(self) -> bool:
        """Cancel pending rescans, stop watchers, move to STOPPED."""
        with self._state_lock:
            if self._state != MonitorState.RUNNING:
                return False
            self._set_state(MonitorState.STOPPING)

        logger.info("Stopping persistence monitoring")
        self._cancel_pending_scans()
        self.watcher_manager.on_change_detected = None
        self.watcher_manager.stop_all()
        self._monitored_categories = []
        self.config.monitoring_enabled = False

        self._set_state(MonitorState.STOPPED)
        get_audit_logger().log_event(
            event_type=EventType.MONITOR_STOPPED,
            severity=EventSeverity.INFO,
            message="Persistence monitoring stopped",
        )
        return True

    def initialize_if_auto_start(self, grace_delay: float = AUTO_START_GRACE_SECONDS) -> bool:
        """Schedule start_monitoring after a grace delay if auto-start is on."""
        if not (self.config.auto_start and self.config.monitoring_enabled):
            return False
        timer = threading.Timer(grace_delay, self.start_monitoring)
        timer.daemon = True
        self._auto_start_timer = timer
        timer.start()
        logger.info("Monitor auto-start scheduled in %.1fs", grace_delay)
        return True

    def shutdown(self) -> None:
        """Cancel a scheduled auto-start and stop if running."""
        if self._auto_start_timer is not None:
            self._auto_start_timer.cancel()
            self._auto_start_timer = None
        self.stop_monitoring()

    def _request_notification_permission(self) -> None:
        try:
            granted = self.notifier.request_permission()
            if not granted:
                logger.warning("Notification permission not granted")
        except Exception as exc:
            logger.warning("Notification permission request failed: %s", exc)

    def _create_initial_baseline(self) -> None:
        items: List[PersistenceItem] = []
        if self.items_provider is not None:
            items = list(self.items_provider() or [])
        if not items:
            items = self._prepare(self.scanner.scan_all())
        self.baseline.create(items)
        logger.info("Created baseline with %d items", len(items))
        get_audit_logger().log_event(
            event_type=EventType.BASELINE_CREATED,
            severity=EventSeverity.INFO,
            message=f"Baseline created with {len(items)} items",
            details=self.baseline.stats(),
        )

    def _prepare(self, items: List[PersistenceItem]) -> List[PersistenceItem]:
        """Attach trust verdicts, then risk scores."""
        return self.risk_scorer.score_all(verify_all(self.trust_verifier, items))

    # ── Rescan scheduling ────────────────────────────────────────────

    def process_event(self, event: DirectoryChangeEvent) -> None:
        """Fan-in callback for watcher events."""
        self.last_event_at = datetime.now()
        if not self.is_running:
            return
        logger.debug(
            "Directory change: %s in %s - %s",
            event.event_type.value, event.category.display_name, event.path,
        )
        self.schedule_rescan(event.category)

    def schedule_rescan(self, category: PersistenceCategory) -> None:
        """Replace any pending rescan of the category with a fresh timer."""
        interval = self.config.scan_debounce_interval
        with self._scan_lock:
            previous = self._pending_scans.pop(category, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(interval, self._on_rescan_due, args=(category,))
            timer.daemon = True
            self._pending_scans[category] = timer
            timer.start()

    @property
    def pending_scan_count(self) -> int:
        with self._scan_lock:
            return len(self._pending_scans)

    def _cancel_pending_scans(self) -> None:
        with self._scan_lock:
            for timer in self._pending_scans.values():
                timer.cancel()
            self._pending_scans.clear()
            self._dirty.clear()

    def _on_rescan_due(self, category: PersistenceCategory) -> None:
        with self._scan_lock:
            if self._pending_scans.get(category) is not threading.current_thread():
                return
            del self._pending_scans[category]
            if category in self._in_flight:
                # the running rescan picks this up when it finishes
                self._dirty.add(category)
                return
            self._in_flight.add(category)

        while True:
            try:
                self.perform_targeted_scan(category)
            except Exception:
                logger.exception("Targeted scan of %s crashed", category.value)
            with self._scan_lock:
                if category in self._dirty and self.is_running:
                    self._dirty.discard(category)
                    continue
                self._dirty.discard(category)
                self._in_flight.discard(category)
                return

    # ── Rescan execution ─────────────────────────────────────────────

    def perform_targeted_scan(self, category: PersistenceCategory) -> List[Change]:
        """Rescan one category, record and notify changes, update its baseline."""
        baseline_items = self.baseline.get(category)
        if baseline_items is None:
            logger.debug("No baseline for %s; skipping rescan", category.display_name)
            return []

        try:
            current = self._prepare(self.scanner.scan(category))
        except Exception as exc:
            # transient: the next filesystem event schedules another rescan
            logger.warning("Targeted scan of %s failed: %s", category.value, exc)
            get_audit_logger().log_event(
                event_type=EventType.SCAN_FAILED,
                severity=EventSeverity.INVESTIGATE,
                message=f"Targeted scan failed for {category.display_name}",
                details={"category": category.value, "error": str(exc)},
            )
            return []

        self.scan_count += 1
        if not self.is_running:
            logger.debug("Monitor stopped during scan of %s; discarding results", category.value)
            return []

        changes = self.change_detector.detect_changes(baseline_items, current, category)
        minimum = self.config.minimum_relevance_score
        notified: List[Change] = []

        for change in changes:
            relevance = self.change_detector.calculate_relevance(change)
            self._record_history(change, relevance)

            if relevance < minimum:
                logger.debug(
                    "Change below threshold (%d < %d): %s", relevance, minimum, change.item_name
                )
                continue

            self._notify(change, relevance)
            notified.append(change)
            self.last_change = change
            self.change_count += 1
            self.unacknowledged_count += 1

        if len(notified) > 1:
            try:
                self.notifier.send_batch_summary(notified)
            except Exception as exc:
                logger.warning("Batch notification failed: %s", exc)

        self.baseline.update(category, current)

        if changes:
            logger.info(
                "%s: %s", category.display_name, self.change_detector.summarize_changes(changes)
            )
        if self.items_listener is not None:
            try:
                self.items_listener(category, current)
            except Exception:
                logger.exception("Items listener failed")
        return changes

    def _record_history(self, change: Change, relevance: int) -> None:
        get_audit_logger().log_change(
            change_type=change.type.value,
            category=change.category.value,
            identifier=change.item_identifier,
            relevance=relevance,
            details={
                "item_name": change.item_name,
                "changes": [d.to_dict() for d in change.details],
            },
        )
        if self.database is None:
            return
        entry = ChangeHistoryEntry(
            change_type=change.type,
            category=change.category,
            item_identifier=change.item_identifier,
            item_name=change.item_name,
            details=list(change.details),
            relevance_score=relevance,
            timestamp=change.timestamp,
        )
        try:
            self.database.save_change_history(entry)
        except StoreError as exc:
            logger.warning("Failed to save change history for %s: %s", change.item_identifier, exc)

    def _notify(self, change: Change, relevance: int) -> None:
        try:
            self.notifier.send(change, relevance)
        except Exception as exc:
            logger.warning("Notification failed for %s: %s", change.item_identifier, exc)

    # ── Baseline and history operations ──────────────────────────────

    def update_baseline(self) -> int:
        """Replace the whole baseline with a fresh full scan."""
        items = self._prepare(self.scanner.scan_all())
        self.baseline.create(items)
        get_audit_logger().log_event(
            event_type=EventType.BASELINE_UPDATED,
            severity=EventSeverity.INFO,
            message=f"Baseline updated with {len(items)} items",
            details=self.baseline.stats(),
        )
        return len(items)

    def reset_baseline(self) -> None:
        """Clear the baseline, change history and counters."""
        self.baseline.clear()
        if self.database is not None:
            self.database.clear_change_history()
        self.change_count = 0
        self.last_change = None
        self.unacknowledged_count = 0
        get_audit_logger().log_event(
            event_type=EventType.BASELINE_RESET,
            severity=EventSeverity.INVESTIGATE,
            message="Baseline and change history reset",
        )

    def acknowledge_all_changes(self) -> int:
        count = 0
        if self.database is not None:
            count = self.database.acknowledge_all()
        self.unacknowledged_count = 0
        return count

    def acknowledge_change(self, entry_id: str) -> bool:
        if self.database is None:
            return False
        acknowledged = self.database.acknowledge_change(entry_id)
        if acknowledged and self.unacknowledged_count > 0:
            self.unacknowledged_count -= 1
        return acknowledged

    def get_change_history(self, limit: int = 100) -> List[ChangeHistoryEntry]:
        if self.database is None:
            return []
        try:
            return self.database.get_change_history(limit)
        except StoreError as exc:
            logger.warning("Failed to read change history: %s", exc)
            return []

    def get_baseline_stats(self) -> Dict[str, Any]:
        stats = self.baseline.stats()
        created = self.baseline.created_at
        return {
            "created_at": created.isoformat() if created else None,
            "categories": stats,
            "total_items": sum(stats.values()),
        }

    def _load_unacknowledged_count(self) -> int:
        if self.database is None:
            return 0
        try:
            return self.database.get_unacknowledged_count()
        except StoreError as exc:
            logger.warning("Failed to load unacknowledged count: %s", exc)
            return 0
