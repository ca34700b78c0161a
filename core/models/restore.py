# ============================================================================
# RESTORE WORKFLOW MODELS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Restore resource options and per-phase results
# PURPOSE: Typed view of a restore resource's spec.options
# CREATED: 17 OCT 2026
# ============================================================================
"""
Restore Workflow Models

A restore resource's spec.options accumulates two documents:

restoreMetadata
    Discovered once when the restore starts and immutable afterwards:
    deployment name, per-instance disk inventory, errand names and
    target-instance selectors.

stateResults
    Per-phase results keyed by phase name. Once a phase's taskId is
    recorded the same id is reused on every re-entry into that phase.
    Fan-out phases (disk create / attach / file seed) record one
    sub-task per instance under `instances`.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.contracts import RestorePhase, TaskOutcome


class _CamelModel(BaseModel):
    """Store documents use camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InstanceDisk(BaseModel):
    """One deployment instance and its persistent disk."""

    model_config = ConfigDict(populate_by_name=True)

    job_name: str
    id: str
    disk_cid: Optional[str] = None
    az: Optional[str] = None
    old_disk_info: Dict[str, Any] = Field(default_factory=dict, alias="oldDiskInfo")


class ErrandTarget(_CamelModel):
    """Errand name plus selector, copied from the catalog at start."""
    name: Optional[str] = None
    instances: Optional[Union[str, int]] = None


class RestoreMetadata(_CamelModel):
    """Immutable inventory captured by start_restore."""
    time_stamp: Optional[str] = Field(default=None, description="Point in time to recover to")
    file_path: Optional[str] = None
    snapshot_id: Optional[str] = None
    deployment_name: str
    deployment_instances_info: List[InstanceDisk] = Field(default_factory=list)
    base_backup_errand: ErrandTarget = Field(default_factory=ErrandTarget)
    point_in_time_errand: ErrandTarget = Field(default_factory=ErrandTarget)
    post_start_errand: ErrandTarget = Field(default_factory=ErrandTarget)


class SubTaskResult(_CamelModel):
    """One instance's share of a fan-out phase."""
    task_id: Optional[str] = None
    state: Optional[TaskOutcome] = None
    result: Optional[Dict[str, Any]] = None


class PhaseResult(_CamelModel):
    """Result of one phase."""
    task_id: Optional[str] = None
    task_result: Optional[Dict[str, Any]] = None
    instances: Dict[str, SubTaskResult] = Field(default_factory=dict)
    skipped: bool = False

    def sub_task_ids_complete(self, instance_ids: List[str]) -> bool:
        """True once every instance has a recorded sub-task id."""
        return all(
            self.instances.get(i) is not None and self.instances[i].task_id
            for i in instance_ids
        )


class RestoreArguments(BaseModel):
    """Request arguments supplied by the API layer."""

    model_config = ConfigDict(extra="allow")

    backup_guid: str
    time_stamp: Optional[str] = None
    backup: Dict[str, Any] = Field(default_factory=dict, description="Backup metadata (type, secret, snapshotId)")
    space_guid: Optional[str] = None


class RestoreOptions(BaseModel):
    """spec.options of a restore resource."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    restore_guid: str
    instance_guid: str
    service_id: str
    plan_id: str
    username: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    arguments: RestoreArguments
    restore_metadata: Optional[RestoreMetadata] = Field(default=None, alias="restoreMetadata")
    state_results: Dict[str, PhaseResult] = Field(default_factory=dict, alias="stateResults")

    @property
    def tenant_id(self) -> Optional[str]:
        """Tenant from the platform context, falling back to the space guid."""
        return (
            self.context.get("space_guid")
            or self.context.get("namespace")
            or self.arguments.space_guid
        )

    def result_for(self, phase: RestorePhase) -> PhaseResult:
        return self.state_results.get(phase.value) or PhaseResult()

    def instance_ids(self) -> List[str]:
        if self.restore_metadata is None:
            return []
        return [i.id for i in self.restore_metadata.deployment_instances_info]


def phase_patch(phase: RestorePhase, result: PhaseResult) -> Dict[str, Any]:
    """Options patch recording a phase result under stateResults."""
    return {
        "stateResults": {
            phase.value: result.model_dump(by_alias=True, mode="json", exclude_none=True),
        }
    }


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "InstanceDisk",
    "ErrandTarget",
    "RestoreMetadata",
    "SubTaskResult",
    "PhaseResult",
    "RestoreArguments",
    "RestoreOptions",
    "phase_patch",
]
