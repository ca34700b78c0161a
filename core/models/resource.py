# ============================================================================
# RESOURCE MODEL
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Versioned resource document
# PURPOSE: Unit of storage and coordination in the resource store
# CREATED: 17 OCT 2026
# ============================================================================
"""
Resource Model

A Resource is a typed, namespaced, versioned document identified by
(resource_group, resource_type, resource_id). Every mutation advances
metadata.resource_version by one; a mutation submitted with a stale
expected version fails with Conflict.

Layout mirrors the store document:
    metadata: name, labels, annotations, resource_version
    spec.options: operation input (typed views in lock.py / restore.py)
    status: state, last_operation, response, error
"""

import copy
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from core.contracts import WatchEventType, is_terminal_state


class ResourceMetadata(BaseModel):
    """Identity, labels, annotations and version of a resource."""

    name: str = Field(..., max_length=128, description="Resource id, unique within (group, type)")
    labels: Dict[str, str] = Field(default_factory=dict, description="Flat, queryable string map")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Free-form string map")
    resource_version: int = Field(default=0, ge=0, description="Advances by one on every mutation")
    created_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)


class ResourceStatus(BaseModel):
    """Mutable outcome of the operation carried by a resource."""

    state: Optional[str] = Field(default=None, description="Operation-specific lifecycle marker")
    last_operation: Optional[Dict[str, Any]] = Field(default=None, description="Latest downstream task snapshot")
    response: Dict[str, Any] = Field(default_factory=dict, description="Result payload for the requester")
    error: Optional[Dict[str, Any]] = Field(default=None, description="Serialized error (see core.errors)")


class Resource(BaseModel):
    """
    A resource document.

    Table: brokerapp.resources
    """

    # SQL DDL Metadata
    __sql_table__: ClassVar[str] = "resources"
    __sql_schema__: ClassVar[str] = "brokerapp"
    __sql_primary_key__: ClassVar[List[str]] = ["resource_group", "resource_type", "resource_id"]

    resource_group: str = Field(..., max_length=128)
    resource_type: str = Field(..., max_length=64)
    metadata: ResourceMetadata
    options: Dict[str, Any] = Field(default_factory=dict, description="spec.options")
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "resource_group": "deployment.servicefabrik.io",
                    "resource_type": "directors",
                    "metadata": {
                        "name": "5a6f8a7e-inst",
                        "labels": {"instance_guid": "5a6f8a7e-inst"},
                        "annotations": {},
                        "resource_version": 3,
                    },
                    "options": {"plan_id": "plan-small", "service_id": "svc-pg"},
                    "status": {"state": "in_progress"},
                }
            ]
        }
    }

    @classmethod
    def new(
        cls,
        resource_group: str,
        resource_type: str,
        resource_id: str,
        options: Optional[Dict[str, Any]] = None,
        state: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> "Resource":
        """Build an unsaved resource."""
        return cls(
            resource_group=resource_group,
            resource_type=resource_type,
            metadata=ResourceMetadata(
                name=resource_id,
                labels=labels or {},
                annotations=annotations or {},
            ),
            options=options or {},
            status=ResourceStatus(state=state),
        )

    @property
    def resource_id(self) -> str:
        return self.metadata.name

    @property
    def state(self) -> Optional[str]:
        return self.status.state

    @property
    def resource_version(self) -> int:
        return self.metadata.resource_version

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.resource_group, self.resource_type, self.metadata.name)

    def is_terminal(self) -> bool:
        return is_terminal_state(self.status.state)

    def annotation(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.metadata.annotations.get(name, default)


class WatchEvent(BaseModel):
    """One event from a watch stream."""

    type: WatchEventType
    resource: Resource


def deep_merge(base: Dict[str, Any], patch: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Merge patch into a copy of base.

    Nested mappings merge key by key; every other value replaces.
    """
    result = copy.deepcopy(base) if base else {}
    if not patch:
        return result
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def apply_patch(
    resource: Resource,
    options: Optional[Dict[str, Any]] = None,
    status: Optional[Dict[str, Any]] = None,
    annotations: Optional[Dict[str, str]] = None,
    labels: Optional[Dict[str, str]] = None,
) -> Resource:
    """
    Return a copy of resource with a partial patch applied.

    Shared by every store implementation so patch semantics match:
    options / status.response / annotations / labels deep-merge,
    status.state / last_operation / error replace.
    """
    merged = resource.model_copy(deep=True)
    if options:
        merged.options = deep_merge(merged.options, options)
    if annotations:
        merged.metadata.annotations = {**merged.metadata.annotations, **annotations}
    if labels:
        merged.metadata.labels = {**merged.metadata.labels, **labels}
    if status:
        for key, value in status.items():
            if key == "response" and isinstance(value, dict):
                merged.status.response = deep_merge(merged.status.response, value)
            elif key in ("state", "last_operation", "error"):
                setattr(merged.status, key, value)
            else:
                raise ValueError(f"Unknown status field in patch: {key}")
    return merged


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "ResourceMetadata",
    "ResourceStatus",
    "Resource",
    "WatchEvent",
    "deep_merge",
    "apply_patch",
]
