# Core Module - Audit Trail
#
# Append-only structured log of every security-relevant decision:
# monitor lifecycle, detected persistence changes, and every attempted
# containment state change (including ones that partially fail).
#
# Records are JSON lines written through structlog into a daily file so
# external tooling can do forensic export without touching the SQLite
# store.

import logging
import os
import socket
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of events written to the audit trail."""

    # Monitor lifecycle
    MONITOR_STARTED = "monitor.started"
    MONITOR_STOPPED = "monitor.stopped"
    MONITOR_ERROR = "monitor.error"
    BASELINE_CREATED = "baseline.created"
    BASELINE_UPDATED = "baseline.updated"
    BASELINE_RESET = "baseline.reset"

    # Detection
    PERSISTENCE_CHANGE = "persistence.change"
    SCAN_FAILED = "scan.failed"
    NOTIFICATION_SENT = "notification.sent"

    # Containment
    ITEM_CONTAINED = "containment.contain"
    ITEM_RELEASED = "containment.release"
    CONTAINMENT_FAILED = "containment.failed"
    TIMEOUT_EXTENDED = "containment.extend"
    PERSISTENCE_DISABLED = "containment.persistence.disable"
    PERSISTENCE_ENABLED = "containment.persistence.enable"
    NETWORK_BLOCKED = "network.blocked"
    NETWORK_UNBLOCKED = "network.unblocked"
    NETWORK_RULE_EXPIRED = "network.rule.expired"
    EMERGENCY_ROLLBACK = "network.rollback"
    INTEGRITY_MISMATCH = "containment.integrity.mismatch"

    # System
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"


class EventSeverity(str, Enum):
    """
    Severity levels for audit events.

    - INFO: normal activity, logged only
    - INVESTIGATE: something changed that a human should look at
    - ALERT: the tool took action (contained, blocked)
    - CRITICAL: action failed or integrity was violated
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger.

    Features:
    - Structured JSON logging via structlog
    - Automatic timestamp and event ID
    - Host/user context on every record
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._setup_file_handler()

        self.logger = structlog.get_logger("persistwatch.audit")

    def _setup_file_handler(self):
        """Attach a daily file handler to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        self.log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(message)s"))

        audit_logger = logging.getLogger("persistwatch.audit")
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        self._file_handler = file_handler

    def close(self) -> None:
        """Detach and close the file handler."""
        logging.getLogger("persistwatch.audit").removeHandler(self._file_handler)
        self._file_handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log an audit event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details
            user_context: Caller context (defaults to OS user and host)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        self.logger.info(
            "audit_event",
            event_id=event_id,
            event_type=event_type.value,
            severity=severity.value,
            message=message,
            timestamp=datetime.utcnow().isoformat(),
            details=details or {},
            user_context=user_context or self._get_default_user_context(),
        )
        return event_id

    def log_change(
        self,
        change_type: str,
        category: str,
        identifier: str,
        relevance: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Log a detected persistence change with its relevance score."""
        severity = EventSeverity.INVESTIGATE if relevance >= 50 else EventSeverity.INFO
        event_details = dict(details or {})
        event_details.update({
            "change_type": change_type,
            "category": category,
            "item_identifier": identifier,
            "relevance": relevance,
        })
        return self.log_event(
            event_type=EventType.PERSISTENCE_CHANGE,
            severity=severity,
            message=f"Persistence {change_type}: {identifier} ({category})",
            details=event_details,
        )

    def log_containment_event(
        self,
        event_type: EventType,
        identifier: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log a containment state change.

        Failed and partial outcomes are logged too; severity escalates so
        they stand out during forensic review.
        """
        if status == "failed":
            severity = EventSeverity.CRITICAL
        elif status in ("active", "partial"):
            severity = EventSeverity.ALERT
        else:
            severity = EventSeverity.INFO

        event_details = dict(details or {})
        event_details["item_identifier"] = identifier
        event_details["status"] = status

        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=f"Containment: {event_type.value} - {identifier} ({status})",
            details=event_details,
        )

    def _get_default_user_context(self) -> Dict[str, Any]:
        return {
            "os_user": os.getenv("USER") or os.getenv("USERNAME"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def log_security_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs
) -> str:
    """
    Convenience function for logging audit events.

    Usage:
        log_security_event(
            EventType.MONITOR_STARTED,
            EventSeverity.INFO,
            "Monitoring 6 categories",
            details={"categories": ["launch_agents"]},
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)
