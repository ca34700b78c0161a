# ============================================================================
# COLLABORATOR INTERFACES
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Protocols for the store and downstream systems
# PURPOSE: Structural types the operators, pollers and lock manager depend on
# CREATED: 17 OCT 2026
# ============================================================================
"""
Collaborator Interfaces

The control plane depends on these protocols only; concrete
implementations live in repositories/ (PostgreSQL store),
infrastructure/ (in-memory store, blob store) or are supplied by the
deployment (director and cloud-disk clients).

All store and downstream calls are suspension points.
"""

from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, runtime_checkable

from core.models import Plan, Resource, ServiceDefinition, WatchEvent


@runtime_checkable
class ResourceStore(Protocol):
    """
    Namespaced, versioned resource store with watch support.

    Errors: NotFound (no such resource), Conflict (version mismatch or
    duplicate create). Every successful mutation advances
    resource_version by one.
    """

    async def register(self, resource_group: str, resource_type: str) -> None:
        """Ensure the (group, type) namespace exists."""
        ...

    async def create(self, resource: Resource) -> Resource:
        ...

    async def get(self, resource_group: str, resource_type: str, resource_id: str) -> Resource:
        ...

    async def update(self, resource: Resource, expected_version: Optional[int] = None) -> Resource:
        """Full replace of options, status, labels and annotations."""
        ...

    async def patch(
        self,
        resource_group: str,
        resource_type: str,
        resource_id: str,
        options: Optional[Dict[str, Any]] = None,
        status: Optional[Dict[str, Any]] = None,
        annotations: Optional[Dict[str, str]] = None,
        labels: Optional[Dict[str, str]] = None,
        expected_version: Optional[int] = None,
    ) -> Resource:
        """Partial merge (see core.models.resource.apply_patch)."""
        ...

    async def delete(self, resource_group: str, resource_type: str, resource_id: str) -> None:
        ...

    async def query(
        self,
        resource_group: str,
        resource_type: str,
        selector: Optional[Dict[str, str]] = None,
    ) -> List[Resource]:
        """Label-selector query (all labels must match)."""
        ...

    def watch(
        self,
        resource_group: str,
        resource_type: str,
        states: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[WatchEvent]:
        """
        Stream ADDED / MODIFIED / DELETED events.

        Delivery is at-least-once. The stream ends after `timeout`
        seconds; callers resubscribe.
        """
        ...


@runtime_checkable
class MetadataStore(Protocol):
    """Backup/restore metadata files keyed by tenant/service/instance/guid."""

    async def get_restore_file(self, selector: Dict[str, str]) -> Dict[str, Any]:
        ...

    async def put_file(self, selector: Dict[str, str], data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def patch_restore_file(self, selector: Dict[str, str], data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def get_backup_file(self, selector: Dict[str, str]) -> Dict[str, Any]:
        ...

    async def list_backup_files(
        self,
        selector: Dict[str, str],
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[Dict[str, Any]]:
        ...


class DirectorClient(Protocol):
    """Deployment director: task submission and polling."""

    async def get_deployment_name(self, instance_guid: str) -> str:
        ...

    async def get_persistent_disks(
        self,
        deployment_name: str,
        instance_groups: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Returns [{job_name, id, disk_cid, az}, ...]."""
        ...

    async def stop_deployment(self, deployment_name: str) -> str:
        ...

    async def start_deployment(self, deployment_name: str) -> str:
        ...

    async def run_deployment_errand(
        self,
        deployment_name: str,
        errand_name: str,
        instances: List[Dict[str, str]],
    ) -> str:
        ...

    async def create_disk_attachment(
        self,
        deployment_name: str,
        volume_id: str,
        job_name: str,
        instance_id: str,
    ) -> str:
        ...

    async def run_ssh(
        self,
        deployment_name: str,
        job_name: str,
        instance_id: str,
        command: str,
    ) -> Dict[str, Any]:
        """Returns {code, stdout, stderr}."""
        ...

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        """Returns {id, state, description, result}."""
        ...


class CloudDiskClient(Protocol):
    """Cloud provider disk API."""

    async def get_disk_metadata(self, disk_id: str, zone: Optional[str] = None) -> Dict[str, Any]:
        """Returns {volumeId, size, type, zone, state, ...}."""
        ...

    async def create_disk_from_snapshot(
        self,
        snapshot_id: str,
        zone: Optional[str],
        opts: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Starts disk creation; returns at least {volumeId}."""
        ...


class PlanCatalog(Protocol):
    """Service and plan lookup."""

    def get_plan(self, plan_id: str) -> Plan:
        ...

    def get_service(self, service_id: str) -> ServiceDefinition:
        ...


class DeploymentService(Protocol):
    """Per-plan deployment manager used by the deployment operator and poller."""

    async def create_or_update(self, resource_id: str, options: Dict[str, Any], operation: str) -> Dict[str, Any]:
        """Returns a last-operation seed {task_id, type}."""
        ...

    async def delete(self, resource_id: str, options: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def get_last_operation(self, resource_id: str, task_id: str) -> Dict[str, Any]:
        """Returns {state: in_progress|succeeded|failed, description}."""
        ...

    async def get_deployment_ips(self, resource_id: str) -> List[str]:
        ...


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "ResourceStore",
    "MetadataStore",
    "DirectorClient",
    "CloudDiskClient",
    "PlanCatalog",
    "DeploymentService",
]
