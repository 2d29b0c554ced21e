"""
Containment API Routes

Contain, release, extend and verify persistence items, plus the
emergency network rollback. Items are addressed by category and
identifier; identifiers may contain slashes (cron and periodic items
use their path), so the identifier segment is a path parameter and the
action routes are registered before the bare item route.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from ..containment.containment_service import ContainmentService, get_containment_service
from ..containment.models import ContainmentResult
from ..core.exceptions import (
    AlreadyContainedError,
    ExternalToolFailedError,
    NotContainedError,
    NotFoundError,
    PermissionDeniedError,
    PersistWatchError,
    ScanFailedError,
    StoreError,
)
from ..core.models import PersistenceCategory, PersistenceItem
from ..guardian.scanner import FilesystemScanner
from .monitor_routes import get_monitor
from .security import require_control_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/containment", tags=["containment"])


def _get_service() -> ContainmentService:
    return get_containment_service()


# ── Pydantic Models ────────────────────────────────────────────────

class ContainRequest(BaseModel):
    timeout: Optional[float] = Field(None, gt=0, description="Seconds until automatic release")
    mode: str = Field("all", description="all, persistence or network")

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v):
        if v not in ("all", "persistence", "network"):
            raise ValueError("mode must be one of: all, persistence, network")
        return v


class ExtendRequest(BaseModel):
    additional: Optional[float] = Field(None, gt=0, description="Seconds to add to the expiry")


# ── Helpers ────────────────────────────────────────────────────────

def _status_code_for(error: Optional[Exception]) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (AlreadyContainedError, NotContainedError)):
        return 409
    if isinstance(error, PermissionDeniedError):
        return 403
    if isinstance(error, StoreError):
        return 500
    if isinstance(error, (ExternalToolFailedError, PersistWatchError)):
        return 502
    return 500


def _respond(result: ContainmentResult) -> dict:
    """Result payload, or an HTTPException carrying the error and warnings."""
    if not result.ok:
        raise HTTPException(
            status_code=_status_code_for(result.error),
            detail={"error": str(result.error), "warnings": result.warnings},
        )
    return result.to_dict()


def _parse_category(category: str) -> PersistenceCategory:
    try:
        return PersistenceCategory(category)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown category: {category}")


def _resolve_item(category: str, identifier: str, service: ContainmentService) -> PersistenceItem:
    """Find an item in the baseline, then a fresh scan, then containment state."""
    cat = _parse_category(category)
    item = get_monitor().baseline.find(identifier, cat)
    if item is not None:
        return item

    try:
        for scanned in FilesystemScanner().scan(cat):
            if scanned.identifier == identifier:
                return scanned
    except ScanFailedError as exc:
        logger.warning("Scan of %s failed while resolving %s: %s", cat.value, identifier, exc)

    item = service.item_for_state(identifier)
    if item is not None:
        return item
    raise HTTPException(status_code=404, detail=f"Item not found: {identifier}")


# ── Collection routes ──────────────────────────────────────────────

@router.get("")
def list_containments():
    states = _get_service().all_states()
    return {"items": [s.to_dict() for s in states], "count": len(states)}


@router.get("/actions")
def recent_actions(limit: int = Query(100, ge=1, le=1000)):
    """Newest ledger entries across all items."""
    try:
        actions = _get_service().database.get_recent_actions(limit)
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"actions": [a.to_dict() for a in actions], "count": len(actions)}


@router.post("/rollback", dependencies=[Depends(require_control_token)])
def emergency_rollback():
    removed = _get_service().emergency_rollback()
    return {"success": True, "removed": removed}


# ── Item action routes (registered before the bare item route) ─────

@router.post("/{category}/{identifier:path}/release", dependencies=[Depends(require_control_token)])
def release_item(category: str, identifier: str):
    service = _get_service()
    item = _resolve_item(category, identifier, service)
    return _respond(service.release(item))


@router.post("/{category}/{identifier:path}/extend", dependencies=[Depends(require_control_token)])
def extend_item(category: str, identifier: str, req: Optional[ExtendRequest] = None):
    service = _get_service()
    item = _resolve_item(category, identifier, service)
    additional = req.additional if req else None
    return _respond(service.extend_timeout(item, additional))


@router.get("/{category}/{identifier:path}/verify")
def verify_item(category: str, identifier: str):
    service = _get_service()
    item = _resolve_item(category, identifier, service)
    status = service.verify_binary_integrity(item)
    return {"item_identifier": identifier, "integrity": status.value}


@router.get("/{category}/{identifier:path}/history")
def item_history(category: str, identifier: str, limit: int = Query(50, ge=1, le=500)):
    _parse_category(category)
    try:
        actions = _get_service().get_containment_history(identifier)[:limit]
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"actions": [a.to_dict() for a in actions], "count": len(actions)}


# ── Bare item routes ───────────────────────────────────────────────

@router.get("/{category}/{identifier:path}")
def get_item_state(category: str, identifier: str):
    _parse_category(category)
    state = _get_service().get_state(identifier)
    if state is None:
        return {"item_identifier": identifier, "is_contained": False}
    return state.to_dict()


@router.post("/{category}/{identifier:path}", dependencies=[Depends(require_control_token)])
def contain_item(category: str, identifier: str, req: Optional[ContainRequest] = None):
    req = req or ContainRequest()
    service = _get_service()
    item = _resolve_item(category, identifier, service)

    if req.mode == "persistence":
        result = service.disable_persistence_only(item)
    elif req.mode == "network":
        result = service.block_network_only(item, req.timeout)
    else:
        result = service.contain(item, req.timeout)
    return _respond(result)
