# ============================================================================
# IN-MEMORY RESOURCE STORE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Infrastructure - Process-local resource store
# PURPOSE: ResourceStore implementation for tests and single-replica local runs
# CREATED: 17 OCT 2026
# ============================================================================
"""
In-Memory Resource Store

Dict-backed implementation of the ResourceStore protocol with the same
semantics as the PostgreSQL store:
- resource_version advances by one per mutation
- stale expected_version -> Conflict, duplicate create -> Conflict
- patch merges via core.models.resource.apply_patch
- watch replays matching resources as ADDED, then streams changes

Every read returns a deep copy so callers cannot mutate stored state.
Mutations complete without awaiting, so each one is atomic on the
event loop.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from core.contracts import WatchEventType
from core.errors import Conflict, NotFound
from core.models import Resource, WatchEvent, apply_patch

logger = logging.getLogger(__name__)

_Key = Tuple[str, str, str]


class _Subscription:
    """One open watch."""

    def __init__(self, resource_group: str, resource_type: str, states: Optional[List[str]]):
        self.resource_group = resource_group
        self.resource_type = resource_type
        self.states = set(states) if states else None
        self.queue: asyncio.Queue = asyncio.Queue()

    def matches(self, resource: Resource) -> bool:
        if resource.resource_group != self.resource_group:
            return False
        if resource.resource_type != self.resource_type:
            return False
        return self.states is None or resource.state in self.states


class InMemoryResourceStore:
    """Process-local ResourceStore."""

    def __init__(self):
        self._resources: Dict[_Key, Resource] = {}
        self._namespaces: Set[Tuple[str, str]] = set()
        self._subscriptions: List[_Subscription] = []

    # =========================================================================
    # NAMESPACES
    # =========================================================================

    async def register(self, resource_group: str, resource_type: str) -> None:
        self._namespaces.add((resource_group, resource_type))
        logger.debug(f"Registered namespace {resource_group}/{resource_type}")

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create(self, resource: Resource) -> Resource:
        key = resource.key
        if key in self._resources:
            raise Conflict(f"Resource {resource.resource_id} already exists", resource_id=resource.resource_id)

        now = datetime.now(timezone.utc)
        stored = resource.model_copy(deep=True)
        stored.metadata.resource_version = 1
        stored.metadata.created_at = now
        stored.metadata.updated_at = now
        self._resources[key] = stored
        self._publish(WatchEventType.ADDED, stored)
        return stored.model_copy(deep=True)

    async def get(self, resource_group: str, resource_type: str, resource_id: str) -> Resource:
        return self._get(resource_group, resource_type, resource_id).model_copy(deep=True)

    async def update(self, resource: Resource, expected_version: Optional[int] = None) -> Resource:
        current = self._get(*resource.key)
        self._check_version(current, expected_version)

        incoming = resource.model_copy(deep=True)
        stored = current.model_copy(deep=True)
        stored.options = incoming.options
        stored.status = incoming.status
        stored.metadata.labels = incoming.metadata.labels
        stored.metadata.annotations = incoming.metadata.annotations
        return self._commit(stored)

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
        current = self._get(resource_group, resource_type, resource_id)
        self._check_version(current, expected_version)
        merged = apply_patch(current, options=options, status=status, annotations=annotations, labels=labels)
        return self._commit(merged)

    async def delete(self, resource_group: str, resource_type: str, resource_id: str) -> None:
        key = (resource_group, resource_type, resource_id)
        removed = self._resources.pop(key, None)
        if removed is None:
            raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)
        self._publish(WatchEventType.DELETED, removed)

    async def query(
        self,
        resource_group: str,
        resource_type: str,
        selector: Optional[Dict[str, str]] = None,
    ) -> List[Resource]:
        selector = selector or {}
        return [
            r.model_copy(deep=True)
            for (group, rtype, _), r in sorted(self._resources.items())
            if group == resource_group
            and rtype == resource_type
            and all(r.metadata.labels.get(k) == v for k, v in selector.items())
        ]

    # =========================================================================
    # WATCH
    # =========================================================================

    async def watch(
        self,
        resource_group: str,
        resource_type: str,
        states: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[WatchEvent]:
        subscription = _Subscription(resource_group, resource_type, states)
        self._subscriptions.append(subscription)
        deadline = time.monotonic() + timeout if timeout is not None else None
        try:
            # Replay current state, like a fresh watch without a start version
            for resource in list(self._resources.values()):
                if subscription.matches(resource):
                    yield WatchEvent(type=WatchEventType.ADDED, resource=resource.model_copy(deep=True))

            while True:
                if deadline is None:
                    event = await subscription.queue.get()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return
                    try:
                        event = await asyncio.wait_for(subscription.queue.get(), timeout=remaining)
                    except asyncio.TimeoutError:
                        return
                yield event
        finally:
            self._subscriptions.remove(subscription)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _get(self, resource_group: str, resource_type: str, resource_id: str) -> Resource:
        resource = self._resources.get((resource_group, resource_type, resource_id))
        if resource is None:
            raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)
        return resource

    @staticmethod
    def _check_version(current: Resource, expected_version: Optional[int]) -> None:
        if expected_version is not None and current.resource_version != expected_version:
            raise Conflict(
                f"Resource {current.resource_id} version mismatch "
                f"(expected {expected_version}, found {current.resource_version})",
                resource_id=current.resource_id,
            )

    def _commit(self, resource: Resource) -> Resource:
        resource.metadata.resource_version += 1
        resource.metadata.updated_at = datetime.now(timezone.utc)
        self._resources[resource.key] = resource
        self._publish(WatchEventType.MODIFIED, resource)
        return resource.model_copy(deep=True)

    def _publish(self, event_type: WatchEventType, resource: Resource) -> None:
        for subscription in self._subscriptions:
            if subscription.matches(resource):
                subscription.queue.put_nowait(
                    WatchEvent(type=event_type, resource=resource.model_copy(deep=True))
                )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["InMemoryResourceStore"]
