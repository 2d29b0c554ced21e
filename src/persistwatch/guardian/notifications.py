# Guardian Module - Change Notifications
#
# The monitor hands relevant changes to a NotificationSink. Delivery is
# best-effort: a sink failure is logged and never interrupts a rescan.
#
# NotificationDispatcher is the default sink. It applies the per-type
# notify toggles from MonitorConfiguration, writes every notification to
# the audit trail, and fans it out to registered subscribers (the API
# exposes recent notifications; a desktop shell can subscribe to show
# native alerts).

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..core.config import MonitorConfiguration
from ..core.models import TrustLevel
from ..intel.change_detector import Change, ChangeDetector, ChangeType

logger = logging.getLogger(__name__)

HIGH_RELEVANCE_THRESHOLD = 70

_TITLES: Dict[ChangeType, str] = {
    ChangeType.ADDED: "New Persistence Item Detected",
    ChangeType.REMOVED: "Persistence Item Removed",
    ChangeType.MODIFIED: "Persistence Item Modified",
    ChangeType.ENABLED: "Persistence Item Enabled",
    ChangeType.DISABLED: "Persistence Item Disabled",
}


@runtime_checkable
class NotificationSink(Protocol):
    def request_permission(self) -> bool: ...

    def send(self, change: Change, relevance: int) -> None: ...

    def send_batch_summary(self, changes: List[Change]) -> None: ...


@dataclass
class Notification:
    title: str
    body: str
    relevance: int = 0
    high_relevance: bool = False
    play_sound: bool = False
    badge_count: Optional[int] = None
    change_id: Optional[str] = None
    category: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "relevance": self.relevance,
            "high_relevance": self.high_relevance,
            "play_sound": self.play_sound,
            "badge_count": self.badge_count,
            "change_id": self.change_id,
            "category": self.category,
            "timestamp": self.timestamp.isoformat(),
        }


def format_notification(change: Change) -> Tuple[str, str]:
    """Title and body text for a change."""
    title = _TITLES[change.type]
    body = f"{change.item_name} [{change.category.display_name}]"
    if change.item is not None:
        if change.item.trust_level == TrustLevel.UNSIGNED:
            body += " - UNSIGNED"
        elif change.item.trust_level == TrustLevel.SUSPICIOUS:
            body += " - SUSPICIOUS"
    return title, body


class NotificationDispatcher:
    """Default notification sink backed by the audit log and subscribers."""

    def __init__(self, config: Optional[MonitorConfiguration] = None, history_size: int = 50):
        self.config = config or MonitorConfiguration()
        self._subscribers: List[Callable[[Notification], None]] = []
        self._recent: Deque[Notification] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self._detector = ChangeDetector()

    def subscribe(self, callback: Callable[[Notification], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Notification], None]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    @property
    def recent(self) -> List[Notification]:
        with self._lock:
            return list(self._recent)

    def request_permission(self) -> bool:
        # Audit-log delivery needs no OS permission; subscribers handle their own.
        return True

    def send(self, change: Change, relevance: int) -> None:
        if not self.config.should_notify(change.type):
            logger.debug("Notification suppressed for %s change", change.type.value)
            return

        title, body = format_notification(change)
        high = relevance >= HIGH_RELEVANCE_THRESHOLD
        notification = Notification(
            title=title,
            body=body,
            relevance=relevance,
            high_relevance=high,
            play_sound=high and self.config.play_sound_on_high_relevance,
            change_id=change.id,
            category=change.category.value,
        )
        self._deliver(notification)

    def send_batch_summary(self, changes: List[Change]) -> None:
        if not changes:
            return
        count = len(changes)
        notification = Notification(
            title=f"{count} Persistence Change{'s' if count != 1 else ''} Detected",
            body=self._detector.summarize_changes(changes),
            badge_count=count if self.config.show_badge else None,
        )
        self._deliver(notification)

    def _deliver(self, notification: Notification) -> None:
        with self._lock:
            self._recent.append(notification)
            subscribers = list(self._subscribers)

        get_audit_logger().log_event(
            event_type=EventType.NOTIFICATION_SENT,
            severity=EventSeverity.INVESTIGATE if notification.high_relevance else EventSeverity.INFO,
            message=f"{notification.title}: {notification.body}",
            details=notification.to_dict(),
        )

        for callback in subscribers:
            try:
                callback(notification)
            except Exception:
                logger.exception("Notification subscriber failed")
