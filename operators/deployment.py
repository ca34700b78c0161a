# ============================================================================
# DEPLOYMENT OPERATOR AND TASK POLLER
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Director-managed deployments
# PURPOSE: Submit create/update/delete to the director and poll the task
# CREATED: 17 OCT 2026
# ============================================================================
"""
Deployment Operator and Task Poller

Resources: deployment.servicefabrik.io/directors

DeploymentOperator (states in_queue / update / delete):
    submit through the plan's DeploymentService, then
    state = in_progress (task id returned) or waiting (queued locally)
    status.response = {task_id, type, ...}

DirectorTaskPoller (state in_progress):
    get_last_operation(task_id) ->
      succeeded + create/update -> succeeded, response.deployment_ips
      succeeded + delete        -> resource deleted
      failed                    -> failed
      in_progress               -> last_operation refreshed
    ServiceInstanceNotFound -> deleted (delete) or failed (otherwise)

DeploymentService instances are built per plan through a factory and
held in a ServiceCache.
"""

import logging
from typing import Any, Callable, Dict, Optional

from core.contracts import OperationType, ResourceGroup, ResourceState, ResourceType, TaskOutcome
from core.errors import InvalidInput, NotFound, ServiceInstanceNotFound, error_payload
from core.interfaces import DeploymentService, PlanCatalog, ResourceStore
from core.models import Plan, Resource
from operators.base import BaseOperator, Handler
from operators.poller import PollerHandle, TaskPoller
from services.service_cache import ServiceCache

logger = logging.getLogger(__name__)

DeploymentServiceFactory = Callable[[Plan], DeploymentService]


class DeploymentServices:
    """Plan lookup plus cached per-plan DeploymentService."""

    def __init__(
        self,
        plan_catalog: PlanCatalog,
        factory: DeploymentServiceFactory,
        cache: Optional[ServiceCache] = None,
    ):
        self.plan_catalog = plan_catalog
        self.factory = factory
        self.cache = cache if cache is not None else ServiceCache()

    def for_resource(self, resource: Resource) -> DeploymentService:
        plan_id = resource.options.get("plan_id")
        if not plan_id:
            raise InvalidInput(f"Resource {resource.resource_id} options should have a plan_id", field="plan_id")
        plan = self.plan_catalog.get_plan(plan_id)
        return self.cache.get_or_create(plan.id, lambda: self.factory(plan))


# ============================================================================
# OPERATOR
# ============================================================================

class DeploymentOperator(BaseOperator):
    """Reconciler for director deployments."""

    RESOURCE_GROUP = ResourceGroup.DEPLOYMENT
    RESOURCE_TYPE = ResourceType.DIRECTOR

    def __init__(self, store: ResourceStore, services: DeploymentServices, **kwargs):
        super().__init__(store, plan_catalog=services.plan_catalog, **kwargs)
        self.services = services

    def handlers(self) -> Dict[str, Handler]:
        return {
            ResourceState.IN_QUEUE.value: self._process_create,
            ResourceState.UPDATE.value: self._process_update,
            ResourceState.DELETE.value: self._process_delete,
        }

    async def _process_create(self, resource: Resource) -> None:
        await self._submit(resource, OperationType.CREATE.value)

    async def _process_update(self, resource: Resource) -> None:
        await self._submit(resource, OperationType.UPDATE.value)

    async def _process_delete(self, resource: Resource) -> None:
        service = self.services.for_resource(resource)
        logger.info(f"Deleting deployment {resource.resource_id}")
        response = await service.delete(resource.resource_id, resource.options)
        await self._write_submission(resource, OperationType.DELETE.value, response)

    async def _submit(self, resource: Resource, operation: str) -> None:
        service = self.services.for_resource(resource)
        logger.info(f"Submitting {operation} for deployment {resource.resource_id}")
        response = await service.create_or_update(resource.resource_id, resource.options, operation)
        await self._write_submission(resource, operation, response)

    async def _write_submission(self, resource: Resource, operation: str, response: Dict[str, Any]) -> None:
        response = {"type": operation, **(response or {})}
        state = ResourceState.IN_PROGRESS if response.get("task_id") else ResourceState.WAITING
        await self.store.patch(
            self.RESOURCE_GROUP,
            self.RESOURCE_TYPE,
            resource.resource_id,
            status={
                "state": state.value,
                "response": response,
                "last_operation": {
                    "type": operation,
                    "state": TaskOutcome.IN_PROGRESS.value,
                    "task_id": response.get("task_id"),
                    "description": f"{operation.capitalize()} deployment is in progress",
                },
            },
        )
        logger.info(f"Deployment {resource.resource_id} {operation} submitted ({state.value})")


# ============================================================================
# TASK POLLER
# ============================================================================

class DirectorTaskPoller(TaskPoller):
    """Polls director tasks for in-progress deployments."""

    RESOURCE_GROUP = ResourceGroup.DEPLOYMENT
    RESOURCE_TYPE = ResourceType.DIRECTOR
    POLLED_STATES = [ResourceState.IN_PROGRESS.value]

    def __init__(self, store: ResourceStore, services: DeploymentServices, **kwargs):
        super().__init__(store, **kwargs)
        self.services = services

    async def get_status(self, resource: Resource, handle: PollerHandle) -> None:
        instance_id = resource.resource_id
        response = resource.status.response or {}
        operation = response.get("type") or (resource.status.last_operation or {}).get("type")
        service = self.services.for_resource(resource)

        try:
            last_operation = await service.get_last_operation(instance_id, response.get("task_id"))
        except ServiceInstanceNotFound as e:
            logger.error(f"Instance {instance_id} not found while polling {operation}")
            self.clear_poller(handle)
            if operation == OperationType.DELETE.value:
                await self._delete(resource)
            else:
                await self.store.patch(
                    self.RESOURCE_GROUP,
                    self.RESOURCE_TYPE,
                    instance_id,
                    status={
                        "state": ResourceState.FAILED.value,
                        "last_operation": {"type": operation, "state": TaskOutcome.FAILED.value,
                                           "description": str(e)},
                        "error": error_payload(e),
                    },
                )
            return

        last_operation = {"type": operation, **last_operation}
        outcome = TaskOutcome(last_operation.get("state", TaskOutcome.IN_PROGRESS.value))
        logger.debug(f"Last operation of {instance_id}: {last_operation}")

        if outcome is TaskOutcome.SUCCEEDED and operation == OperationType.DELETE.value:
            self.clear_poller(handle)
            await self._delete(resource)
            return

        status: Dict[str, Any] = {"last_operation": last_operation, "state": outcome.value}
        if outcome is TaskOutcome.SUCCEEDED:
            try:
                status["response"] = {"deployment_ips": await service.get_deployment_ips(instance_id)}
            except Exception as e:
                logger.error(f"Could not read deployment IPs for {instance_id}: {e}")
                status["response"] = {"deployment_ips": []}

        await self.store.patch(
            self.RESOURCE_GROUP,
            self.RESOURCE_TYPE,
            instance_id,
            status=status,
            expected_version=resource.resource_version,
        )
        if outcome is not TaskOutcome.IN_PROGRESS:
            logger.info(f"Deployment {instance_id} {operation} finished: {outcome.value}")
            self.clear_poller(handle)

    async def _delete(self, resource: Resource) -> None:
        try:
            await self.store.delete(self.RESOURCE_GROUP, self.RESOURCE_TYPE, resource.resource_id)
        except NotFound:
            pass
        logger.info(f"Deployment {resource.resource_id} deleted")


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "DeploymentServices",
    "DeploymentServiceFactory",
    "DeploymentOperator",
    "DirectorTaskPoller",
]
