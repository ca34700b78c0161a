# ============================================================================
# CLAUDE CONTEXT - CORE MODULE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core module initialization
# PURPOSE: Export core contracts, errors and models
# LAST_REVIEWED: 17 OCT 2026
# ============================================================================

from core.contracts import ResourceState, LockType, WatchEventType, RestorePhase
from core.errors import (
    ErrorKind,
    BrokerError,
    NotFound,
    Conflict,
    AlreadyLocked,
    InvalidInput,
    TaskFailed,
    ServiceInstanceNotFound,
)
from core.models import Resource, WatchEvent, Lock, PollerLease, Plan, RestoreOptions

__all__ = [
    # Enums
    "ResourceState",
    "LockType",
    "WatchEventType",
    "RestorePhase",
    # Errors
    "ErrorKind",
    "BrokerError",
    "NotFound",
    "Conflict",
    "AlreadyLocked",
    "InvalidInput",
    "TaskFailed",
    "ServiceInstanceNotFound",
    # Models
    "Resource",
    "WatchEvent",
    "Lock",
    "PollerLease",
    "Plan",
    "RestoreOptions",
]
