# ============================================================================
# BASE OPERATOR - WATCH-DRIVEN RECONCILER
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Generic reconciliation loop
# PURPOSE: Watch one resource type and dispatch its states to handlers
# CREATED: 17 OCT 2026
# ============================================================================
"""
Base Operator

Watch-driven reconciler, instantiated per resource type:

1. init() registers the (group, type) namespace and starts the watch loop
2. The watch is filtered to the states that have handlers
3. Each event is claimed (processing annotations), dispatched through the
   state -> handler table, then released
4. Handler errors become a patch to FAILED with a serialized error; the
   watch loop keeps going

Processing claim:
    lockedByManager     = <owner_id>
    processingStartedAt = <iso time>

A resource whose claim is set and younger than processing_timeout is
skipped, whoever holds it. The claim is written with the version the
event carried, so a stale or duplicate event loses with Conflict.

The watch is torn down and reopened every refresh interval; a failure
to open or read it waits error_delay before retrying.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.config import PollerDefaults, WatchDefaults, get_defaults
from core.contracts import Annotation, ResourceState, WatchEventType
from core.errors import Conflict, ErrorKind, InvalidInput, NotFound, classify, error_payload
from core.interfaces import PlanCatalog, ResourceStore
from core.logging import log_context
from core.models import Plan, Resource, WatchEvent

logger = logging.getLogger(__name__)

Handler = Callable[[Resource], Awaitable[Any]]


class BaseOperator(ABC):
    """
    Reconciler for one resource type.

    Subclasses set RESOURCE_GROUP / RESOURCE_TYPE and return their
    state -> handler table from handlers().
    """

    RESOURCE_GROUP: str = ""
    RESOURCE_TYPE: str = ""

    def __init__(
        self,
        store: ResourceStore,
        plan_catalog: Optional[PlanCatalog] = None,
        watch_defaults: Optional[WatchDefaults] = None,
        poller_defaults: Optional[PollerDefaults] = None,
        owner_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize operator.

        Args:
            store: Resource store to watch and patch
            plan_catalog: Plan lookup for plan-dependent handlers
            watch_defaults: Refresh and error-delay settings
            poller_defaults: Processing-claim timeout
            owner_id: Identity written into processing claims
            clock: Time source, returns an aware UTC datetime
        """
        defaults = get_defaults()
        self.store = store
        self.plan_catalog = plan_catalog
        self.watch_defaults = watch_defaults or defaults.watch
        self.poller_defaults = poller_defaults or defaults.poller
        self._owner_id = owner_id or str(uuid.uuid4())
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # State
        self._running = False
        self._stop_event = asyncio.Event()
        self._watch_task: Optional[asyncio.Task] = None

        # Metrics
        self._started_at: Optional[datetime] = None
        self._events = 0
        self._processed = 0
        self._skipped = 0
        self._failed = 0
        self._watch_errors = 0
        self._last_event_at: Optional[datetime] = None

    @property
    def owner_id(self) -> str:
        """This operator's unique ID."""
        return self._owner_id

    @property
    def name(self) -> str:
        return f"{self.__class__.__name__}({self.RESOURCE_TYPE})"

    @abstractmethod
    def handlers(self) -> Dict[str, Handler]:
        """State -> handler table."""

    def watched_states(self) -> List[str]:
        return list(self.handlers())

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def init(self) -> None:
        """Register the resource namespace and start watching."""
        if self._running:
            logger.warning(f"{self.name} already running")
            return

        await self.store.register(self.RESOURCE_GROUP, self.RESOURCE_TYPE)

        self._running = True
        self._started_at = self._clock()
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(
            self._watch_loop(),
            name=f"operator-{self.RESOURCE_TYPE}-{self._owner_id[:8]}",
        )
        logger.info(f"{self.name} started (owner_id={self._owner_id[:8]}..., states={self.watched_states()})")

    async def stop(self) -> None:
        """Stop the watch loop. A handler in flight is cancelled."""
        self._running = False
        self._stop_event.set()
        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None
        logger.info(f"{self.name} stopped (events={self._events}, processed={self._processed}, failed={self._failed})")

    async def _watch_loop(self) -> None:
        states = self.watched_states()
        while self._running and not self._stop_event.is_set():
            try:
                async for event in self.store.watch(
                    self.RESOURCE_GROUP,
                    self.RESOURCE_TYPE,
                    states=states,
                    timeout=self.watch_defaults.refresh_interval_seconds,
                ):
                    if self._stop_event.is_set():
                        break
                    await self.handle_event(event)
                logger.debug(f"{self.name} refreshing watch")
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
    # EVENT HANDLING
    # =========================================================================

    async def handle_event(self, event: WatchEvent) -> None:
        """Claim, dispatch and release one watch event."""
        self._events += 1
        self._last_event_at = self._clock()
        resource = event.resource

        if event.type == WatchEventType.DELETED or resource.state not in self.handlers():
            return

        try:
            claimed = await self._acquire_processing_lock(resource)
        except Exception as e:
            logger.exception(f"{self.name} could not claim {resource.resource_id}: {e}")
            return
        if claimed is None:
            self._skipped += 1
            return

        await self.process_request(claimed)
        await self._release_processing_lock(claimed)

    async def process_request(self, resource: Resource) -> Any:
        """
        Dispatch a resource to the handler for its state.

        Handler errors never escape: they are written to the resource as
        FAILED, except "already gone" during delete, which completes the
        delete.
        """
        handler = self.handlers().get(resource.state)
        if handler is None:
            logger.warning(f"{self.name} has no handler for state {resource.state}")
            return None

        with log_context(
            resource_id=resource.resource_id,
            resource_type=self.RESOURCE_TYPE,
            operation=resource.state,
            owner_id=self._owner_id,
        ):
            try:
                result = await handler(resource)
                self._processed += 1
                return result
            except Exception as e:
                kind = classify(e)
                if resource.state == ResourceState.DELETE.value and kind in (
                    ErrorKind.NOT_FOUND,
                    ErrorKind.INSTANCE_NOT_FOUND,
                ):
                    logger.info(f"{resource.resource_id} already gone downstream, completing delete")
                    await self._delete_quietly(resource)
                    return None
                self._failed += 1
                logger.error(f"Handler for {resource.state} failed on {resource.resource_id}: {e}")
                await self.mark_failed(resource, e)
                return None

    async def mark_failed(self, resource: Resource, exc: BaseException) -> None:
        """Patch the resource to FAILED with a serialized error."""
        try:
            await self.store.patch(
                resource.resource_group,
                resource.resource_type,
                resource.resource_id,
                status={"state": ResourceState.FAILED.value, "error": error_payload(exc)},
            )
        except NotFound:
            logger.warning(f"{resource.resource_id} vanished before it could be marked failed")
        except Exception as e:
            logger.exception(f"Could not mark {resource.resource_id} failed: {e}")

    async def _delete_quietly(self, resource: Resource) -> None:
        try:
            await self.store.delete(resource.resource_group, resource.resource_type, resource.resource_id)
        except NotFound:
            pass

    # =========================================================================
    # PROCESSING LOCK
    # =========================================================================

    def _claim_is_fresh(self, resource: Resource) -> bool:
        holder = resource.annotation(Annotation.LOCKED_BY_MANAGER)
        started = resource.annotation(Annotation.PROCESSING_STARTED_AT)
        if not holder or not started:
            return False
        try:
            started_at = datetime.fromisoformat(started)
        except ValueError:
            return False
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)
        timeout = timedelta(seconds=self.poller_defaults.processing_timeout_seconds)
        if self._clock() - started_at < timeout:
            logger.debug(f"{resource.resource_id} is being processed by {holder} since {started}")
            return True
        logger.info(f"Processing lock on {resource.resource_id} expired, taking over")
        return False

    async def _acquire_processing_lock(self, resource: Resource) -> Optional[Resource]:
        """
        Claim the resource for this replica.

        Returns:
            The claimed resource, or None when another claim is active or
            the claim lost a race
        """
        if self._claim_is_fresh(resource):
            return None
        try:
            return await self.store.patch(
                resource.resource_group,
                resource.resource_type,
                resource.resource_id,
                annotations={
                    Annotation.LOCKED_BY_MANAGER: self._owner_id,
                    Annotation.PROCESSING_STARTED_AT: self._clock().isoformat(),
                },
                expected_version=resource.resource_version,
            )
        except (Conflict, NotFound):
            logger.info(f"{resource.resource_id} is probably picked by another worker")
            return None

    async def _release_processing_lock(self, resource: Resource) -> None:
        try:
            await self.store.patch(
                resource.resource_group,
                resource.resource_type,
                resource.resource_id,
                annotations={
                    Annotation.LOCKED_BY_MANAGER: "",
                    Annotation.PROCESSING_STARTED_AT: "",
                },
            )
        except NotFound:
            logger.debug(f"{resource.resource_id} already deleted, no lock to release")
        except Exception as e:
            logger.error(f"Error releasing processing lock on {resource.resource_id}: {e}")

    # =========================================================================
    # PLAN LOOKUP
    # =========================================================================

    def plan_for(self, resource: Resource) -> Plan:
        """Resolve the plan backing a resource from options.plan_id."""
        plan_id = resource.options.get("plan_id")
        if not plan_id:
            raise InvalidInput(f"Resource {resource.resource_id} has no plan_id", field="plan_id")
        if self.plan_catalog is None:
            raise RuntimeError(f"{self.name} has no plan catalog")
        return self.plan_catalog.get_plan(plan_id)

    # =========================================================================
    # STATUS
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> Dict[str, Any]:
        """Get operator statistics."""
        return {
            "name": self.name,
            "running": self._running,
            "owner_id": self._owner_id,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "states": self.watched_states(),
            "events": self._events,
            "processed": self._processed,
            "skipped": self._skipped,
            "failed": self._failed,
            "watch_errors": self._watch_errors,
            "last_event_at": self._last_event_at.isoformat() if self._last_event_at else None,
        }


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["BaseOperator", "Handler"]
