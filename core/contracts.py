# ============================================================================
# CLAUDE CONTEXT - BASE CONTRACTS & ENUMS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Foundation - Core enums and resource identity constants
# PURPOSE: Define resource states, lock types, watch events and restore phases
# LAST_REVIEWED: 17 OCT 2026
# EXPORTS: ResourceState, LockType, WatchEventType, OperationType, RestorePhase
# DEPENDENCIES: enum
# ============================================================================
"""
Base contracts for the broker control plane.

These define the vocabulary shared across boundaries:
- Resource store (PostgreSQL rows / in-memory documents)
- Operators and pollers (state -> handler dispatch)
- Downstream task status (director, cloud disks)

Everything here is a plain value; behaviour lives in operators/.
"""

from enum import Enum
from typing import FrozenSet, Optional


# ============================================================================
# RESOURCE GROUPS AND TYPES
# ============================================================================

class ResourceGroup:
    """Resource group names (namespaces for resource types)."""
    LOCK = "lock.servicefabrik.io"
    DEPLOYMENT = "deployment.servicefabrik.io"
    BIND = "bind.servicefabrik.io"
    BACKUP = "backup.servicefabrik.io"
    RESTORE = "restore.servicefabrik.io"


class ResourceType:
    """Resource type names within a group."""
    DEPLOYMENT_LOCKS = "deploymentlocks"
    DIRECTOR = "directors"
    DOCKER = "dockers"
    VIRTUALHOST = "virtualhosts"
    POSTGRESQL_MT = "postgresqlmts"
    DIRECTOR_BIND = "directorbinds"
    DOCKER_BIND = "dockerbinds"
    DEFAULT_BACKUP = "defaultbackups"
    DEFAULT_RESTORE = "defaultrestores"
    DEFAULT_BOSH_RESTORE = "defaultboshrestores"


# ============================================================================
# STATUS ENUMS
# ============================================================================

class ResourceState(str, Enum):
    """
    Lifecycle states stored in a resource's status.state.

    Deployment transitions:
        IN_QUEUE -> IN_PROGRESS -> SUCCEEDED
                               -> FAILED
        UPDATE   -> IN_PROGRESS -> ...
        DELETE   -> IN_PROGRESS -> (resource deleted)
                               -> DELETE_FAILED

    Lock resources only ever carry LOCKED / UNLOCKED.
    """
    IN_QUEUE = "in_queue"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    UPDATE = "update"
    DELETE = "delete"
    DELETED = "deleted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DELETE_FAILED = "delete_failed"
    ABORT = "abort"
    ABORTING = "aborting"
    ABORTED = "aborted"
    LOCKED = "locked"
    UNLOCKED = "unlocked"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state (no further transitions)."""
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[ResourceState] = frozenset({
    ResourceState.SUCCEEDED,
    ResourceState.FAILED,
    ResourceState.DELETE_FAILED,
    ResourceState.ABORTED,
})


def is_terminal_state(state: Optional[str]) -> bool:
    """True if a raw state string names a terminal ResourceState."""
    return state in {s.value for s in TERMINAL_STATES}


class LockType(str, Enum):
    """Lock modes. READ locks permit other parallel-safe operations."""
    READ = "READ"
    WRITE = "WRITE"


class WatchEventType(str, Enum):
    """Event kinds delivered by a resource watch stream."""
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class OperationType(str, Enum):
    """Operation names recorded in last_operation and lock details."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BACKUP = "backup"
    RESTORE = "restore"
    UPDATE_SERVICEFLOW = "update_serviceflow"


# Operations that always take a WRITE lock, regardless of plan configuration
WRITE_OPERATIONS: FrozenSet[str] = frozenset({
    OperationType.CREATE.value,
    OperationType.UPDATE.value,
    OperationType.DELETE.value,
    OperationType.RESTORE.value,
    OperationType.UPDATE_SERVICEFLOW.value,
})


class DirectorTaskState(str, Enum):
    """
    Task states reported by the deployment director.

    Anything other than DONE / PROCESSING / QUEUED is a failure
    (error, cancelled, timeout).
    """
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @classmethod
    def classify(cls, raw: Optional[str]) -> "TaskOutcome":
        if raw == cls.DONE.value:
            return TaskOutcome.SUCCEEDED
        if raw in (cls.PROCESSING.value, cls.QUEUED.value):
            return TaskOutcome.IN_PROGRESS
        return TaskOutcome.FAILED


class TaskOutcome(str, Enum):
    """Normalised outcome of any polled downstream task."""
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ============================================================================
# RESTORE PHASES
# ============================================================================

class RestorePhase(str, Enum):
    """
    Ordered phases of the restore workflow.

    Each phase owns two resource states:
        trigger_<PHASE>      work not yet issued
        in_progress_<PHASE>  work issued, awaiting completion

    Declaration order is execution order.
    """
    BOSH_STOP = "BOSH_STOP"
    CREATE_DISK = "CREATE_DISK"
    ATTACH_DISK = "ATTACH_DISK"
    PUT_FILE = "PUT_FILE"
    BASEBACKUP_ERRAND = "BASEBACKUP_ERRAND"
    PITR_ERRAND = "PITR_ERRAND"
    BOSH_START = "BOSH_START"
    POST_BOSH_START_ERRAND = "POST_BOSH_START_ERRAND"

    @property
    def trigger_state(self) -> str:
        return f"trigger_{self.value}"

    @property
    def in_progress_state(self) -> str:
        return f"in_progress_{self.value}"

    def next_phase(self) -> Optional["RestorePhase"]:
        """The phase after this one, or None when the workflow is complete."""
        phases = list(RestorePhase)
        index = phases.index(self)
        if index + 1 < len(phases):
            return phases[index + 1]
        return None

    @classmethod
    def first(cls) -> "RestorePhase":
        return next(iter(cls))

    @classmethod
    def parse_state(cls, state: str) -> Optional[tuple]:
        """
        Split a resource state into (phase, is_trigger).

        Returns None for states that are not restore phase markers.
        """
        for prefix, is_trigger in (("trigger_", True), ("in_progress_", False)):
            if state and state.startswith(prefix):
                try:
                    return cls(state[len(prefix):]), is_trigger
                except ValueError:
                    return None
        return None

    @classmethod
    def trigger_states(cls) -> list:
        return [phase.trigger_state for phase in cls]

    @classmethod
    def in_progress_states(cls) -> list:
        return [phase.in_progress_state for phase in cls]


# ============================================================================
# ANNOTATION KEYS
# ============================================================================

class Annotation:
    """Well-known metadata.annotations keys."""
    LOCKED_BY_MANAGER = "lockedByManager"
    PROCESSING_STARTED_AT = "processingStartedAt"
    LOCKED_BY_TASK_POLLER = "lockedByTaskPoller"


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "ResourceGroup",
    "ResourceType",
    "ResourceState",
    "TERMINAL_STATES",
    "is_terminal_state",
    "LockType",
    "WatchEventType",
    "OperationType",
    "WRITE_OPERATIONS",
    "DirectorTaskState",
    "TaskOutcome",
    "RestorePhase",
    "Annotation",
]
