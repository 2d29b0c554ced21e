"""
Persistence Monitor API Routes

Status, lifecycle, change history and baseline management for the
background PersistenceMonitor. Mutating routes require the control token.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from ..core.config import MonitorConfiguration, MonitorPreset
from ..core.exceptions import StoreError
from ..core.preferences import Preferences
from ..guardian.monitor_database import MonitorDatabase
from ..guardian.notifications import NotificationDispatcher
from ..guardian.persistence_monitor import PersistenceMonitor
from ..guardian.scanner import FilesystemScanner
from .security import require_control_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/monitor", tags=["monitor"])

# Singletons (initialized lazily, one per process)
_monitor: Optional[PersistenceMonitor] = None
_preferences: Optional[Preferences] = None
_init_lock = threading.RLock()  # RLock: get_monitor -> get_preferences re-enters


def get_preferences() -> Preferences:
    global _preferences
    if _preferences is None:
        with _init_lock:
            if _preferences is None:
                _preferences = Preferences()
    return _preferences


def get_monitor() -> PersistenceMonitor:
    """Get or create the process-wide monitor."""
    global _monitor
    if _monitor is None:
        with _init_lock:
            if _monitor is None:
                config = MonitorConfiguration.load(get_preferences())
                _monitor = PersistenceMonitor(
                    scanner=FilesystemScanner(),
                    config=config,
                    database=MonitorDatabase(),
                )
    return _monitor


def set_monitor(monitor: Optional[PersistenceMonitor], preferences: Optional[Preferences] = None) -> None:
    """Replace the singletons (startup wiring and tests)."""
    global _monitor, _preferences
    _monitor = monitor
    if preferences is not None:
        _preferences = preferences


# ── Pydantic Models ────────────────────────────────────────────────

class ConfigUpdateRequest(BaseModel):
    preset: Optional[str] = Field(None, description="minimal, balanced or paranoid")
    auto_start: Optional[bool] = None
    cooldown_interval: Optional[float] = Field(None, gt=0, le=3600)
    scan_debounce_interval: Optional[float] = Field(None, gt=0, le=3600)
    minimum_relevance_score: Optional[int] = Field(None, ge=0, le=100)
    enabled_categories: Optional[List[str]] = None
    notify_on_add: Optional[bool] = None
    notify_on_remove: Optional[bool] = None
    notify_on_modify: Optional[bool] = None
    play_sound_on_high_relevance: Optional[bool] = None
    show_badge: Optional[bool] = None
    default_containment_timeout: Optional[float] = Field(None, gt=0)

    @field_validator("preset")
    @classmethod
    def validate_preset(cls, v):
        if v is not None and v not in {p.value for p in MonitorPreset}:
            raise ValueError("preset must be one of: minimal, balanced, paranoid")
        return v


# ── Status and lifecycle ───────────────────────────────────────────

def _status_payload(monitor: PersistenceMonitor) -> Dict[str, Any]:
    last = monitor.last_change
    return {
        "state": monitor.state.value,
        "status": monitor.status_description,
        "error": monitor.error_message,
        "is_running": monitor.is_running,
        "monitored_categories": [c.value for c in monitor.monitored_categories],
        "change_count": monitor.change_count,
        "unacknowledged_count": monitor.unacknowledged_count,
        "last_change": last.to_dict() if last else None,
        "last_event_at": monitor.last_event_at.isoformat() if monitor.last_event_at else None,
        "scan_count": monitor.scan_count,
        "pending_scans": monitor.pending_scan_count,
    }


@router.get("/status")
def monitor_status():
    return _status_payload(get_monitor())


@router.post("/start", dependencies=[Depends(require_control_token)])
def start_monitor():
    monitor = get_monitor()
    started = monitor.start_monitoring()
    payload = _status_payload(monitor)
    payload["success"] = started
    return payload


@router.post("/stop", dependencies=[Depends(require_control_token)])
def stop_monitor():
    monitor = get_monitor()
    stopped = monitor.stop_monitoring()
    payload = _status_payload(monitor)
    payload["success"] = stopped
    return payload


# ── Change history ─────────────────────────────────────────────────

@router.get("/history")
def change_history(limit: int = Query(100, ge=1, le=1000)):
    entries = get_monitor().get_change_history(limit)
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


@router.post("/acknowledge", dependencies=[Depends(require_control_token)])
def acknowledge_all():
    try:
        count = get_monitor().acknowledge_all_changes()
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"success": True, "acknowledged": count}


@router.post("/acknowledge/{entry_id}", dependencies=[Depends(require_control_token)])
def acknowledge_one(entry_id: str):
    try:
        acknowledged = get_monitor().acknowledge_change(entry_id)
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    if not acknowledged:
        raise HTTPException(status_code=404, detail="Change not found or already acknowledged")
    return {"success": True, "id": entry_id}


@router.get("/notifications")
def recent_notifications():
    notifier = get_monitor().notifier
    if not isinstance(notifier, NotificationDispatcher):
        return {"notifications": []}
    return {"notifications": [n.to_dict() for n in reversed(notifier.recent)]}


# ── Baseline ───────────────────────────────────────────────────────

@router.get("/baseline")
def baseline_stats():
    return get_monitor().get_baseline_stats()


@router.post("/baseline", dependencies=[Depends(require_control_token)])
def update_baseline():
    monitor = get_monitor()
    try:
        count = monitor.update_baseline()
    except Exception as exc:
        logger.error("Baseline update failed: %s", exc)
        raise HTTPException(status_code=500, detail=f"Baseline update failed: {exc}")
    return {"success": True, "items": count, "baseline": monitor.get_baseline_stats()}


@router.post("/baseline/reset", dependencies=[Depends(require_control_token)])
def reset_baseline():
    try:
        get_monitor().reset_baseline()
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"success": True}


# ── Configuration ──────────────────────────────────────────────────

@router.get("/config")
def get_config():
    return get_monitor().config.to_dict()


@router.put("/config", dependencies=[Depends(require_control_token)])
def update_config(req: ConfigUpdateRequest):
    monitor = get_monitor()
    config = monitor.config

    if req.preset is not None:
        config.apply_preset(MonitorPreset(req.preset))
    for name, value in req.model_dump(exclude_none=True, exclude={"preset"}).items():
        config._set_field(name, value)

    monitor.watcher_manager.update_cooldown(config.cooldown_interval)
    try:
        config.save(get_preferences())
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=f"Settings not saved: {exc}")
    return config.to_dict()
