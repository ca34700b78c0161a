# ============================================================================
# RESTORE OPERATOR
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Trigger side of the restore workflow
# PURPOSE: Dispatch in_queue and trigger_<PHASE> states to the restore service
# CREATED: 17 OCT 2026
# ============================================================================
"""
Restore Operator

Watches restore.servicefabrik.io/defaultboshrestores in states in_queue
and trigger_<PHASE>. Failures are finalized through the restore service
so the metadata file records the outcome alongside the resource.
"""

import logging
from typing import Dict

from core.contracts import ResourceGroup, ResourceState, ResourceType, RestorePhase, TaskOutcome
from core.models import Resource
from operators.base import BaseOperator, Handler
from operators.restore.service import RestoreService

logger = logging.getLogger(__name__)


class RestoreOperator(BaseOperator):
    """Reconciler for restore resources."""

    RESOURCE_GROUP = ResourceGroup.RESTORE
    RESOURCE_TYPE = ResourceType.DEFAULT_BOSH_RESTORE

    def __init__(self, store, service: RestoreService, **kwargs):
        super().__init__(store, plan_catalog=service.plan_catalog, **kwargs)
        self.service = service

    def handlers(self) -> Dict[str, Handler]:
        table: Dict[str, Handler] = {ResourceState.IN_QUEUE.value: self.service.start_restore}
        for phase in RestorePhase:
            table[phase.trigger_state] = self.service.trigger
        return table

    async def mark_failed(self, resource: Resource, exc: BaseException) -> None:
        try:
            await self.service.finalize(resource, TaskOutcome.FAILED, exc)
        except Exception as e:
            logger.exception(f"Could not finalize failed restore {resource.resource_id}: {e}")
            await super().mark_failed(resource, exc)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["RestoreOperator"]
