# ============================================================================
# CATALOG MODELS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Service and plan catalog entries
# PURPOSE: Typed catalog entries consumed by operators and the lock manager
# CREATED: 17 OCT 2026
# ============================================================================
"""
Catalog Models

Service and plan definitions loaded by the plan catalog. Only the fields
the control plane reads are modelled; everything else is kept in `extra`.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ErrandConfig(BaseModel):
    """A restore errand: script name and target-instance selector."""
    name: Optional[str] = Field(default=None, description="Errand name; absent means skip")
    instances: Optional[Union[str, int]] = Field(
        default=None,
        description="'all', 'any' or a numeric instance index",
    )


class RestoreOperationConfig(BaseModel):
    """Service-level restore settings."""
    filesystem_path: Optional[str] = Field(
        default=None,
        description="Where restore options are written on each instance",
    )
    instance_group: Optional[Union[str, List[str]]] = Field(
        default=None,
        description="Instance groups whose persistent disks are restored",
    )
    errands: Dict[str, ErrandConfig] = Field(
        default_factory=dict,
        description="Keyed by base_backup_restore / point_in_time / post_start",
    )


class ServiceDefinition(BaseModel):
    """A catalog service."""
    id: str
    name: str
    restore_operation: RestoreOperationConfig = Field(default_factory=RestoreOperationConfig)
    extra: Dict[str, Any] = Field(default_factory=dict)


class Plan(BaseModel):
    """A catalog plan."""
    id: str
    name: str
    service_id: str
    manager: str = Field(default="director", description="Which operator family manages instances")
    parallel_operations: List[str] = Field(
        default_factory=list,
        description="Operations that may run alongside others under a READ lock",
    )
    extra: Dict[str, Any] = Field(default_factory=dict)

    def allows_parallel(self, operation: str) -> bool:
        return operation in self.parallel_operations


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["ErrandConfig", "RestoreOperationConfig", "ServiceDefinition", "Plan"]
