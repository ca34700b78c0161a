# ============================================================================
# CONTROL PLANE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Process wiring
# PURPOSE: Build and run the store, lock manager, operators and pollers
# CREATED: 17 OCT 2026
# ============================================================================
"""
Control Plane

Owns every long-running component of one broker replica:

    UnlockPoller                        always
    DeploymentOperator + DirectorTaskPoller   when a deployment service factory is supplied
    RestoreOperator + RestoreStatusPoller     when director, cloud disk and metadata clients are supplied

Each component keeps its own PollerRegistry; nothing is shared between
components except the store.

Usage:
    store = await build_store()
    plane = ControlPlane(store, PlanCatalogService(), director=..., cloud=..., metadata_store=...)
    await plane.start()
    ...
    await plane.stop()
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from core.config import Defaults, get_defaults
from core.interfaces import CloudDiskClient, DirectorClient, MetadataStore, PlanCatalog, ResourceStore
from infrastructure.locking import LockManager
from infrastructure.memory_store import InMemoryResourceStore
from operators.deployment import DeploymentOperator, DeploymentServiceFactory, DeploymentServices, DirectorTaskPoller
from operators.restore import RestoreOperator, RestoreService, RestoreStatusPoller
from operators.unlock_poller import UnlockPoller
from services.service_cache import ServiceCache

logger = logging.getLogger(__name__)


async def build_store(defaults: Optional[Defaults] = None) -> ResourceStore:
    """
    Build the resource store selected by RESOURCE_STORE_BACKEND.

    postgres opens the shared pool and ensures the schema exists.
    """
    defaults = defaults or get_defaults()
    backend = defaults.store.backend
    if backend == "memory":
        logger.warning("Using in-memory resource store (state is lost on restart)")
        return InMemoryResourceStore()
    if backend != "postgres":
        raise ValueError(f"Unknown resource store backend: {backend}")

    from repositories import PostgresResourceStore, init_pool

    pool = await init_pool()
    store = PostgresResourceStore(pool, poll_interval=defaults.store.watch_poll_interval_seconds)
    await store.ensure_schema()
    return store


class ControlPlane:
    """All operators and pollers of one replica."""

    def __init__(
        self,
        store: ResourceStore,
        plan_catalog: PlanCatalog,
        director: Optional[DirectorClient] = None,
        cloud: Optional[CloudDiskClient] = None,
        metadata_store: Optional[MetadataStore] = None,
        deployment_factory: Optional[DeploymentServiceFactory] = None,
        defaults: Optional[Defaults] = None,
        owner_id: Optional[str] = None,
    ):
        self.defaults = defaults or get_defaults()
        self.store = store
        self.plan_catalog = plan_catalog
        self.owner_id = owner_id or str(uuid.uuid4())
        self.service_cache = ServiceCache(max_size=self.defaults.store.service_cache_size)

        common = {
            "watch_defaults": self.defaults.watch,
            "poller_defaults": self.defaults.poller,
            "owner_id": self.owner_id,
        }

        self.lock_manager = LockManager(store, self.defaults.locks)
        self.unlock_poller = UnlockPoller(
            store,
            self.lock_manager,
            lock_defaults=self.defaults.locks,
            watch_defaults=self.defaults.watch,
        )

        self.operators: List[Any] = []
        self.pollers: List[Any] = [self.unlock_poller]

        if deployment_factory is not None:
            services = DeploymentServices(plan_catalog, deployment_factory, self.service_cache)
            self.operators.append(DeploymentOperator(store, services, **common))
            self.pollers.append(DirectorTaskPoller(store, services, **common))
        else:
            logger.info("No deployment service factory configured, deployment operator disabled")

        if director is not None and cloud is not None and metadata_store is not None:
            self.restore_service = RestoreService(
                store,
                director,
                cloud,
                metadata_store,
                plan_catalog,
                restore_defaults=self.defaults.restore,
            )
            self.operators.append(RestoreOperator(store, self.restore_service, **common))
            self.pollers.append(RestoreStatusPoller(
                store,
                self.restore_service,
                restore_defaults=self.defaults.restore,
                **common,
            ))
        else:
            self.restore_service = None
            logger.info("Director, cloud disk or metadata client missing, restore workflow disabled")

        self._running = False
        self._stop_event = asyncio.Event()
        self._housekeeping_task: Optional[asyncio.Task] = None
        self._purged = 0

    @property
    def components(self) -> List[Any]:
        return [*self.operators, *self.pollers]

    async def start(self) -> None:
        """Start every component. Pollers start before operators."""
        if self._running:
            return
        for poller in self.pollers:
            await poller.init()
        for operator in self.operators:
            await operator.init()

        self._stop_event.clear()
        if hasattr(self.store, "purge_deleted"):
            self._housekeeping_task = asyncio.create_task(
                self._housekeeping_loop(),
                name=f"housekeeping-{self.owner_id[:8]}",
            )

        self._running = True
        logger.info(
            f"Control plane started (owner_id={self.owner_id[:8]}..., "
            f"operators={len(self.operators)}, pollers={len(self.pollers)})"
        )

    async def stop(self) -> None:
        """Stop every component, operators first."""
        self._stop_event.set()
        if self._housekeeping_task:
            self._housekeeping_task.cancel()
            try:
                await self._housekeeping_task
            except asyncio.CancelledError:
                pass
            self._housekeeping_task = None

        for component in [*self.operators, *self.pollers]:
            try:
                await component.stop()
            except Exception as e:
                logger.exception(f"Error stopping {type(component).__name__}: {e}")
        self._running = False
        logger.info("Control plane stopped")

    async def _housekeeping_loop(self) -> None:
        """Purge delete tombstones once per retention period."""
        retention = self.defaults.store.tombstone_retention_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=retention)
                break
            except asyncio.TimeoutError:
                pass
            try:
                self._purged += await self.store.purge_deleted(retention)
            except Exception as e:
                logger.exception(f"Tombstone purge failed: {e}")

    @property
    def is_running(self) -> bool:
        return self._running

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "owner_id": self.owner_id,
            "operators": [o.stats for o in self.operators],
            "pollers": [
                {"name": type(p).__name__, **p.stats} for p in self.pollers
            ],
            "service_cache": self.service_cache.stats,
            "tombstones_purged": self._purged,
        }


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["ControlPlane", "build_store"]
