# ============================================================================
# TASK POLLER - LEASE-COORDINATED STATUS POLLING
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Periodic polling of long-running downstream tasks
# PURPOSE: One timer per resource, one replica per resource via lease annotation
# CREATED: 17 OCT 2026
# ============================================================================
"""
Task Poller

Three pieces:

- PollerRegistry: resource id -> PollerHandle for the timers this
  process runs. Local bookkeeping, never authoritative.
- PollerScheduler: starts one periodic task per resource id (idempotent)
  and cancels it through the handle's cancellation event. Ticks receive
  the handle so they can cancel themselves.
- TaskPoller: watches in-progress resources and polls each one:

    read resource
      -> lease held by another owner and fresh?   skip tick
      -> patch lease {lockTime: now, ownerId: me}  Conflict? skip tick
      -> resource no longer in a polled state?     cancel timer
      -> get_status(resource)                      subclass hook

Lease freshness is poll_interval + relaxation. A crashed replica's lease
expires and another replica picks the resource up on its next tick.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.config import PollerDefaults, WatchDefaults, get_defaults
from core.contracts import Annotation, ResourceState, WatchEventType
from core.errors import Conflict, ErrorKind, NotFound, classify, error_payload
from core.interfaces import ResourceStore
from core.logging import log_context
from core.models import PollerLease, Resource, WatchEvent

logger = logging.getLogger(__name__)


# ============================================================================
# REGISTRY AND SCHEDULER
# ============================================================================

class PollerHandle:
    """A running timer and its cancellation token."""

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        self.cancelled = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        self.ticks = 0

    def cancel(self) -> None:
        self.cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


class PollerRegistry:
    """Resource ids this process is currently polling."""

    def __init__(self):
        self._handles: Dict[str, PollerHandle] = {}

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def get(self, resource_id: str) -> Optional[PollerHandle]:
        return self._handles.get(resource_id)

    def add(self, handle: PollerHandle) -> None:
        self._handles[handle.resource_id] = handle

    def remove(self, resource_id: str, handle: Optional[PollerHandle] = None) -> None:
        """Drop an entry; with a handle, only if it is still the registered one."""
        if handle is None or self._handles.get(resource_id) is handle:
            self._handles.pop(resource_id, None)

    def ids(self) -> List[str]:
        return sorted(self._handles)

    def handles(self) -> List[PollerHandle]:
        return list(self._handles.values())


Tick = Callable[[PollerHandle], Awaitable[None]]


class PollerScheduler:
    """
    Periodic per-resource timers with explicit start / cancel.

    The first tick runs one interval after start.
    """

    def __init__(self, registry: Optional[PollerRegistry] = None, name: str = "poller"):
        self.registry = registry if registry is not None else PollerRegistry()
        self.name = name

    def start(self, resource_id: str, tick: Tick, interval: float) -> bool:
        """
        Start polling resource_id unless a timer already runs for it.

        Returns:
            True if a new timer was started
        """
        if resource_id in self.registry:
            return False
        handle = PollerHandle(resource_id)
        self.registry.add(handle)
        handle.task = asyncio.create_task(
            self._run(handle, tick, interval),
            name=f"{self.name}-{resource_id[:8]}",
        )
        logger.debug(f"Started {self.name} timer for {resource_id} (interval={interval}s)")
        return True

    def cancel(self, resource_id: str) -> bool:
        handle = self.registry.get(resource_id)
        if handle is None:
            return False
        handle.cancel()
        self.registry.remove(resource_id, handle)
        logger.debug(f"Cleared {self.name} timer for {resource_id}")
        return True

    async def _run(self, handle: PollerHandle, tick: Tick, interval: float) -> None:
        try:
            while not handle.is_cancelled:
                try:
                    await asyncio.wait_for(handle.cancelled.wait(), timeout=interval)
                    break
                except asyncio.TimeoutError:
                    pass
                handle.ticks += 1
                try:
                    await tick(handle)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"{self.name} tick failed for {handle.resource_id}: {e}")
        finally:
            self.registry.remove(handle.resource_id, handle)

    async def shutdown(self) -> None:
        """Cancel every timer and wait for them to finish."""
        handles = self.registry.handles()
        for handle in handles:
            handle.cancel()
        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"{self.name} scheduler stopped ({len(handles)} timers cancelled)")

    @property
    def active_count(self) -> int:
        return len(self.registry)


# ============================================================================
# TASK POLLER
# ============================================================================

class TaskPoller(ABC):
    """
    Lease-coordinated poller for one resource type.

    Subclasses set RESOURCE_GROUP / RESOURCE_TYPE / POLLED_STATES and
    implement get_status().
    """

    RESOURCE_GROUP: str = ""
    RESOURCE_TYPE: str = ""
    POLLED_STATES: List[str] = [ResourceState.IN_PROGRESS.value]
    POLLED_EVENTS = (WatchEventType.ADDED, WatchEventType.MODIFIED)
    LEASE_ANNOTATION = Annotation.LOCKED_BY_TASK_POLLER

    def __init__(
        self,
        store: ResourceStore,
        poller_defaults: Optional[PollerDefaults] = None,
        watch_defaults: Optional[WatchDefaults] = None,
        scheduler: Optional[PollerScheduler] = None,
        owner_id: Optional[str] = None,
        poll_interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        defaults = get_defaults()
        self.store = store
        self.poller_defaults = poller_defaults or defaults.poller
        self.watch_defaults = watch_defaults or defaults.watch
        self.scheduler = scheduler or PollerScheduler(name=f"poller-{self.RESOURCE_TYPE}")
        self.poll_interval = poll_interval or self.poller_defaults.poll_interval_seconds
        self._owner_id = owner_id or str(uuid.uuid4())
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # State
        self._running = False
        self._stop_event = asyncio.Event()
        self._watch_task: Optional[asyncio.Task] = None

        # Metrics
        self._polls = 0
        self._leases_skipped = 0
        self._errors = 0
        self._watch_errors = 0

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def name(self) -> str:
        return f"{self.__class__.__name__}({self.RESOURCE_TYPE})"

    @property
    def lease_window_seconds(self) -> float:
        return self.poll_interval + self.poller_defaults.relaxation_seconds

    def get_pollers(self) -> PollerRegistry:
        """Timers this poller is running, keyed by resource id."""
        return self.scheduler.registry

    @abstractmethod
    async def get_status(self, resource: Resource, handle: PollerHandle) -> None:
        """Query the downstream task and write the outcome to the resource."""

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def init(self) -> None:
        """Start the watch that feeds start_poller()."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(
            self._watch_loop(),
            name=f"poller-watch-{self.RESOURCE_TYPE}-{self._owner_id[:8]}",
        )
        logger.info(f"{self.name} started (interval={self.poll_interval}s, window={self.lease_window_seconds}s)")

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
        logger.info(f"{self.name} stopped (polls={self._polls}, errors={self._errors})")

    async def _watch_loop(self) -> None:
        while self._running and not self._stop_event.is_set():
            try:
                async for event in self.store.watch(
                    self.RESOURCE_GROUP,
                    self.RESOURCE_TYPE,
                    states=self.POLLED_STATES,
                    timeout=self.watch_defaults.poller_refresh_interval_seconds,
                ):
                    self.start_poller(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._watch_errors += 1
                logger.exception(f"{self.name} watch error: {e}")
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.watch_defaults.error_delay_seconds,
                    )
                    break
                except asyncio.TimeoutError:
                    pass

    # =========================================================================
    # POLLING
    # =========================================================================

    def start_poller(self, event: WatchEvent) -> bool:
        """
        Start a timer for the event's resource if none is running.

        Returns:
            True if a new timer was started
        """
        if event.type not in self.POLLED_EVENTS:
            return False
        if event.resource.state not in self.POLLED_STATES:
            return False
        resource_id = event.resource.resource_id
        return self.scheduler.start(
            resource_id,
            lambda handle: self.poll_status(resource_id, handle),
            self.poll_interval,
        )

    def clear_poller(self, handle: PollerHandle) -> None:
        handle.cancel()
        self.scheduler.registry.remove(handle.resource_id, handle)

    async def poll_status(self, resource_id: str, handle: PollerHandle) -> None:
        """One tick for one resource."""
        self._polls += 1
        with log_context(resource_id=resource_id, resource_type=self.RESOURCE_TYPE, owner_id=self._owner_id):
            try:
                resource = await self.store.get(self.RESOURCE_GROUP, self.RESOURCE_TYPE, resource_id)
            except NotFound:
                logger.info(f"{resource_id} is gone, clearing poller")
                self.clear_poller(handle)
                return

            leased = await self.acquire_lease(resource)
            if leased is None:
                return

            if leased.state not in self.POLLED_STATES:
                logger.info(f"{resource_id} left polled states ({leased.state}), clearing poller")
                self.clear_poller(handle)
                return

            try:
                await self.get_status(leased, handle)
            except Exception as e:
                kind = classify(e)
                if kind is ErrorKind.CONFLICT:
                    logger.info(f"{resource_id} changed while polling, retrying next tick")
                    return
                if kind is ErrorKind.NOT_FOUND:
                    logger.info(f"{resource_id} deleted while polling, clearing poller")
                    self.clear_poller(handle)
                    return
                self._errors += 1
                logger.error(f"Error polling status for {resource_id}, clearing poller: {e}")
                await self.mark_failed(leased, e)
                self.clear_poller(handle)

    async def acquire_lease(self, resource: Resource) -> Optional[Resource]:
        """
        Acquire or refresh this replica's lease.

        Returns:
            The patched resource, or None if another replica holds a fresh
            lease or won the race
        """
        now = self._clock()
        lease = PollerLease.from_annotation(resource.annotation(self.LEASE_ANNOTATION))
        if lease is not None and lease.owner_id != self._owner_id and lease.is_fresh(self.lease_window_seconds, now):
            self._leases_skipped += 1
            logger.debug(f"{lease.owner_id[:8]}... is already polling {resource.resource_id}")
            return None

        new_lease = PollerLease(lock_time=now, owner_id=self._owner_id)
        try:
            return await self.store.patch(
                resource.resource_group,
                resource.resource_type,
                resource.resource_id,
                annotations={self.LEASE_ANNOTATION: new_lease.to_annotation()},
                expected_version=resource.resource_version,
            )
        except (Conflict, NotFound):
            self._leases_skipped += 1
            logger.debug(f"Lost poller lease race on {resource.resource_id}")
            return None

    async def mark_failed(self, resource: Resource, exc: BaseException) -> None:
        try:
            await self.store.patch(
                resource.resource_group,
                resource.resource_type,
                resource.resource_id,
                status={"state": ResourceState.FAILED.value, "error": error_payload(exc)},
            )
        except NotFound:
            logger.warning(f"{resource.resource_id} vanished before it could be marked failed")

    # =========================================================================
    # STATUS
    # =========================================================================

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "owner_id": self._owner_id,
            "poll_interval": self.poll_interval,
            "active_pollers": self.scheduler.active_count,
            "polling": self.scheduler.registry.ids(),
            "polls": self._polls,
            "leases_skipped": self._leases_skipped,
            "errors": self._errors,
            "watch_errors": self._watch_errors,
        }


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "PollerHandle",
    "PollerRegistry",
    "PollerScheduler",
    "TaskPoller",
]
