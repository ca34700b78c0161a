# ============================================================================
# UNLOCK POLLER
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Lock release after operation completion
# PURPOSE: Release deployment locks once the locking operation is terminal
# CREATED: 17 OCT 2026
# ============================================================================
"""
Unlock Poller

Watches lock resources in state LOCKED. For each active lock a timer
checks, every unlock_poll_interval seconds, the resource named in
lockedResourceDetails:

- terminal (succeeded / failed / delete_failed / aborted) -> unlock
- gone (NotFound)                                          -> unlock
- anything else                                            -> keep waiting

Every tick re-reads the lock, so a lock that was released or taken over
by a newer operation since the timer started is handled correctly.
Unlock is token-guarded: only the lock generation that was read is
released.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from core.config import LockDefaults, WatchDefaults, get_defaults
from core.contracts import ResourceGroup, ResourceState, ResourceType, WatchEventType, is_terminal_state
from core.errors import NotFound
from core.interfaces import ResourceStore
from core.models import Lock, WatchEvent
from infrastructure.locking import LockManager
from operators.poller import PollerHandle, PollerScheduler

logger = logging.getLogger(__name__)


class UnlockPoller:
    """Releases locks held by operations that have finished."""

    RESOURCE_GROUP = ResourceGroup.LOCK
    RESOURCE_TYPE = ResourceType.DEPLOYMENT_LOCKS

    def __init__(
        self,
        store: ResourceStore,
        lock_manager: LockManager,
        lock_defaults: Optional[LockDefaults] = None,
        watch_defaults: Optional[WatchDefaults] = None,
        scheduler: Optional[PollerScheduler] = None,
    ):
        defaults = get_defaults()
        self.store = store
        self.lock_manager = lock_manager
        self.lock_defaults = lock_defaults or defaults.locks
        self.watch_defaults = watch_defaults or defaults.watch
        self.scheduler = scheduler or PollerScheduler(name="unlock-poller")

        self._running = False
        self._stop_event = asyncio.Event()
        self._watch_task: Optional[asyncio.Task] = None
        self._released = 0
        self._watch_errors = 0

    async def init(self) -> None:
        """Register the lock namespace and start watching locks."""
        if self._running:
            return
        await self.store.register(self.RESOURCE_GROUP, self.RESOURCE_TYPE)
        self._running = True
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(self._watch_loop(), name="unlock-poller-watch")
        logger.info(f"UnlockPoller started (interval={self.lock_defaults.unlock_poll_interval_seconds}s)")

    async def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None
        await self.scheduler.shutdown()

    async def _watch_loop(self) -> None:
        while self._running and not self._stop_event.is_set():
            try:
                async for event in self.store.watch(
                    self.RESOURCE_GROUP,
                    self.RESOURCE_TYPE,
                    states=[ResourceState.LOCKED.value],
                    timeout=self.watch_defaults.refresh_interval_seconds,
                ):
                    self.start_poller(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._watch_errors += 1
                logger.exception(f"UnlockPoller watch error: {e}")
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.watch_defaults.error_delay_seconds,
                    )
                    break
                except asyncio.TimeoutError:
                    pass

    def start_poller(self, event: WatchEvent) -> bool:
        """Start a timer for an active lock (idempotent)."""
        if event.type not in (WatchEventType.ADDED, WatchEventType.MODIFIED):
            return False
        lock = Lock.from_resource(event.resource)
        if not lock.is_active():
            return False
        target_id = lock.target_id
        logger.debug(f"Starting unlock poller for {target_id}")
        return self.scheduler.start(
            target_id,
            lambda handle: self.poll(target_id, handle),
            self.lock_defaults.unlock_poll_interval_seconds,
        )

    async def poll(self, target_id: str, handle: PollerHandle) -> None:
        """Release the lock on target_id if its operation has finished."""
        lock = await self.lock_manager.get_lock(target_id)
        if lock is None or lock.state != ResourceState.LOCKED.value:
            handle.cancel()
            return

        details = lock.options.locked_resource_details
        if not (details.resource_group and details.resource_type and details.resource_id):
            logger.warning(f"Lock on {target_id} does not name the locked resource, leaving it to expire")
            handle.cancel()
            return

        try:
            locked = await self.store.get(details.resource_group, details.resource_type, details.resource_id)
            state = locked.state
        except NotFound:
            logger.info(f"Locked resource {details.resource_id} not found, releasing lock on {target_id}")
            state = None
        else:
            logger.debug(f"{details.operation} {details.resource_id} on {target_id} is {state}")
            if not is_terminal_state(state):
                return

        await self.lock_manager.unlock(target_id, str(lock.resource_version))
        self._released += 1
        handle.cancel()
        logger.info(f"Released lock on {target_id} after {details.operation} finished ({state or 'gone'})")

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "active_pollers": self.scheduler.active_count,
            "released": self._released,
            "watch_errors": self._watch_errors,
        }


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["UnlockPoller"]
