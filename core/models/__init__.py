# ============================================================================
# CLAUDE CONTEXT - MODELS MODULE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Model exports
# PURPOSE: Central export point for all Pydantic models
# LAST_REVIEWED: 17 OCT 2026
# ============================================================================
"""
Models Module - Central Export Point

All Pydantic models for the broker control plane.

Resource is the only persisted document; Lock, PollerLease and
RestoreOptions are typed views deserialized from a Resource once at the
store boundary.
"""

from core.models.resource import (
    Resource,
    ResourceMetadata,
    ResourceStatus,
    WatchEvent,
    deep_merge,
    apply_patch,
)
from core.models.lock import Lock, LockOptions, LockedResourceDetails
from core.models.lease import PollerLease
from core.models.plan import Plan, ServiceDefinition, RestoreOperationConfig, ErrandConfig
from core.models.restore import (
    InstanceDisk,
    ErrandTarget,
    RestoreMetadata,
    SubTaskResult,
    PhaseResult,
    RestoreArguments,
    RestoreOptions,
    phase_patch,
)

__all__ = [
    # Resource
    "Resource",
    "ResourceMetadata",
    "ResourceStatus",
    "WatchEvent",
    "deep_merge",
    "apply_patch",
    # Lock
    "Lock",
    "LockOptions",
    "LockedResourceDetails",
    # Lease
    "PollerLease",
    # Catalog
    "Plan",
    "ServiceDefinition",
    "RestoreOperationConfig",
    "ErrandConfig",
    # Restore
    "InstanceDisk",
    "ErrandTarget",
    "RestoreMetadata",
    "SubTaskResult",
    "PhaseResult",
    "RestoreArguments",
    "RestoreOptions",
    "phase_patch",
]
