# ============================================================================
# RESTORE STATUS POLLER
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Completion side of the restore workflow
# PURPOSE: Poll in_progress_<PHASE> work and advance restores to the next trigger
# CREATED: 17 OCT 2026
# ============================================================================
"""
Restore Status Poller

Lease-coordinated poller over restore resources in any in_progress_<PHASE>
state that waits on downstream work. A completed phase moves the
resource to the next trigger_<PHASE> (picked up by the RestoreOperator)
and the timer is cleared; the next in_progress state starts a new one.
"""

import logging
from typing import Optional

from core.config import RestoreDefaults, get_defaults
from core.contracts import ResourceGroup, ResourceType, TaskOutcome
from core.models import Resource
from operators.poller import PollerHandle, TaskPoller
from operators.restore.service import RestoreService, polled_states

logger = logging.getLogger(__name__)


class RestoreStatusPoller(TaskPoller):
    """Polls restore phases and advances them on completion."""

    RESOURCE_GROUP = ResourceGroup.RESTORE
    RESOURCE_TYPE = ResourceType.DEFAULT_BOSH_RESTORE
    POLLED_STATES = polled_states()

    def __init__(
        self,
        store,
        service: RestoreService,
        restore_defaults: Optional[RestoreDefaults] = None,
        **kwargs,
    ):
        restore_defaults = restore_defaults or get_defaults().restore
        kwargs.setdefault("poll_interval", restore_defaults.restore_poll_interval_seconds)
        super().__init__(store, **kwargs)
        self.service = service

    async def get_status(self, resource: Resource, handle: PollerHandle) -> None:
        if await self.service.poll(resource):
            logger.info(f"{resource.resource_id} left {resource.state}, clearing poller")
            self.clear_poller(handle)

    async def mark_failed(self, resource: Resource, exc: BaseException) -> None:
        try:
            await self.service.finalize(resource, TaskOutcome.FAILED, exc)
        except Exception as e:
            logger.exception(f"Could not finalize failed restore {resource.resource_id}: {e}")
            await super().mark_failed(resource, exc)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["RestoreStatusPoller"]
