"""
PersistWatch Containment Module
Reversible isolation of suspicious persistence items
"""

from .containment_database import ContainmentDatabase
from .containment_service import (
    ContainmentService,
    get_containment_service,
    set_containment_service,
)
from .models import (
    ContainmentAction,
    ContainmentActionType,
    ContainmentResult,
    ContainmentState,
    ContainmentStatus,
    IntegrityStatus,
    NetworkMethod,
    NetworkRule,
    ResultKind,
)
from .network_blocker import NetworkBlocker
from .privileged import (
    CommandOutput,
    DirectExecutor,
    OsascriptExecutor,
    PrivilegedExecutor,
    SudoExecutor,
    default_executor,
)

__all__ = [
    'ContainmentService',
    'get_containment_service',
    'set_containment_service',
    'ContainmentDatabase',
    'NetworkBlocker',
    'PrivilegedExecutor',
    'SudoExecutor',
    'OsascriptExecutor',
    'DirectExecutor',
    'CommandOutput',
    'default_executor',
    'ContainmentAction',
    'ContainmentActionType',
    'ContainmentResult',
    'ContainmentState',
    'ContainmentStatus',
    'IntegrityStatus',
    'NetworkMethod',
    'NetworkRule',
    'ResultKind',
]
