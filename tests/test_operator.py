# ============================================================================
# BASE OPERATOR TESTS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Tests - Watch-driven reconciler
# PURPOSE: Verify claim, dispatch, release and failure isolation
# CREATED: 17 OCT 2026
# ============================================================================
"""
Base Operator Tests

Covers:
1. Watch loop dispatches by state; one failing resource does not stop others
2. Fresh processing claim by another replica is skipped
3. Expired processing claim is taken over
4. Stale event (version behind the store) is skipped
5. NotFound during delete completes the delete
6. plan_for requires plan_id
7. A watch that fails to open is reopened after the error delay

Run with:
    pytest tests/test_operator.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest

from core.config import PollerDefaults, WatchDefaults
from core.contracts import Annotation, ResourceState, WatchEventType
from core.errors import InvalidInput, NotFound
from core.models import Resource, WatchEvent
from infrastructure.memory_store import InMemoryResourceStore
from operators.base import BaseOperator

GROUP = "test.servicefabrik.io"
TYPE = "widgets"
NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class WidgetOperator(BaseOperator):
    """Operator with one create handler and one delete handler."""

    RESOURCE_GROUP = GROUP
    RESOURCE_TYPE = TYPE

    def __init__(self, store, **kwargs):
        super().__init__(store, **kwargs)
        self.calls = []

    def handlers(self) -> Dict:
        return {
            ResourceState.IN_QUEUE.value: self.create,
            ResourceState.DELETE.value: self.delete,
        }

    async def create(self, resource: Resource):
        self.calls.append(("create", resource.resource_id))
        if resource.options.get("fail"):
            raise RuntimeError(resource.options["fail"])
        await self.store.patch(GROUP, TYPE, resource.resource_id, status={"state": ResourceState.SUCCEEDED.value})

    async def delete(self, resource: Resource):
        self.calls.append(("delete", resource.resource_id))
        raise NotFound("deployment not found", resource_id=resource.resource_id)


def make_operator(store, **kwargs) -> WidgetOperator:
    kwargs.setdefault("clock", lambda: NOW)
    return WidgetOperator(
        store,
        watch_defaults=WatchDefaults(refresh_interval_seconds=5, error_delay_seconds=0.1),
        poller_defaults=PollerDefaults(processing_timeout_seconds=300),
        owner_id="operator-a",
        **kwargs,
    )


async def wait_for_state(store, resource_id: str, state: str, timeout: float = 2.0) -> Resource:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        resource = await store.get(GROUP, TYPE, resource_id)
        if resource.state == state:
            return resource
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"{resource_id} stuck in {resource.state}, expected {state}")
        await asyncio.sleep(0.01)


async def event_for(store, resource_id: str) -> WatchEvent:
    return WatchEvent(type=WatchEventType.ADDED, resource=await store.get(GROUP, TYPE, resource_id))


class FlakyWatchStore(InMemoryResourceStore):
    """In-memory store whose first watch() calls fail to open."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures
        self.watch_calls = 0

    def watch(self, *args, **kwargs):
        self.watch_calls += 1
        if self.watch_calls <= self.failures:
            return self._refused()
        return super().watch(*args, **kwargs)

    async def _refused(self):
        raise ConnectionError("watch registration refused")
        yield


# ============================================================================
# WATCH LOOP
# ============================================================================

class TestWatchLoop:
    """Dispatch through the running watch."""

    def test_failure_is_isolated_per_resource(self):
        """A failing handler marks its resource FAILED; others still succeed."""
        async def scenario():
            store = InMemoryResourceStore()
            operator = make_operator(store, clock=lambda: datetime.now(timezone.utc))
            await operator.init()
            try:
                await store.create(Resource.new(GROUP, TYPE, "bad", {"fail": "disk quota exceeded"}, ResourceState.IN_QUEUE.value))
                await store.create(Resource.new(GROUP, TYPE, "good", {}, ResourceState.IN_QUEUE.value))

                bad = await wait_for_state(store, "bad", ResourceState.FAILED.value)
                good = await wait_for_state(store, "good", ResourceState.SUCCEEDED.value)
            finally:
                await operator.stop()

            assert bad.status.error["message"] == "disk quota exceeded"
            assert bad.status.error["code"] == "internal"
            assert good.status.error is None
            assert operator.stats["failed"] == 1
            assert operator.stats["processed"] == 1

        asyncio.run(scenario())

    def test_claim_released_after_dispatch(self):
        async def scenario():
            store = InMemoryResourceStore()
            operator = make_operator(store, clock=lambda: datetime.now(timezone.utc))
            await operator.init()
            try:
                await store.create(Resource.new(GROUP, TYPE, "w-1", {}, ResourceState.IN_QUEUE.value))
                await wait_for_state(store, "w-1", ResourceState.SUCCEEDED.value)
                await asyncio.sleep(0.05)
            finally:
                await operator.stop()

            resource = await store.get(GROUP, TYPE, "w-1")
            assert not resource.annotation(Annotation.LOCKED_BY_MANAGER)
            assert not resource.annotation(Annotation.PROCESSING_STARTED_AT)

        asyncio.run(scenario())

    def test_failed_watch_is_reopened_after_error_delay(self):
        async def scenario():
            store = FlakyWatchStore(failures=1)
            operator = make_operator(store, clock=lambda: datetime.now(timezone.utc))
            await store.create(Resource.new(GROUP, TYPE, "w-1", {}, ResourceState.IN_QUEUE.value))
            await operator.init()
            try:
                await asyncio.sleep(0.02)
                assert store.watch_calls == 1
                assert operator.calls == []

                await wait_for_state(store, "w-1", ResourceState.SUCCEEDED.value)
            finally:
                await operator.stop()

            assert store.watch_calls == 2
            assert operator.stats["watch_errors"] == 1
            assert operator.calls == [("create", "w-1")]

        asyncio.run(scenario())

    def test_stop_is_clean(self):
        async def scenario():
            operator = make_operator(InMemoryResourceStore())
            await operator.init()
            assert operator.is_running
            await operator.stop()
            assert not operator.is_running

        asyncio.run(scenario())


# ============================================================================
# PROCESSING CLAIM
# ============================================================================

class TestProcessingClaim:
    """handle_event() claim semantics."""

    def test_fresh_claim_by_other_replica_is_skipped(self):
        async def scenario():
            store = InMemoryResourceStore()
            operator = make_operator(store)
            await store.create(Resource.new(
                GROUP, TYPE, "w-1", {}, ResourceState.IN_QUEUE.value,
                annotations={
                    Annotation.LOCKED_BY_MANAGER: "operator-b",
                    Annotation.PROCESSING_STARTED_AT: (NOW - timedelta(seconds=30)).isoformat(),
                },
            ))

            await operator.handle_event(await event_for(store, "w-1"))

            assert operator.calls == []
            assert operator.stats["skipped"] == 1

        asyncio.run(scenario())

    def test_own_fresh_claim_is_skipped_too(self):
        """A fresh claim is honored whoever holds it."""
        async def scenario():
            store = InMemoryResourceStore()
            operator = make_operator(store)
            await store.create(Resource.new(
                GROUP, TYPE, "w-1", {}, ResourceState.IN_QUEUE.value,
                annotations={
                    Annotation.LOCKED_BY_MANAGER: "operator-a",
                    Annotation.PROCESSING_STARTED_AT: NOW.isoformat(),
                },
            ))

            await operator.handle_event(await event_for(store, "w-1"))
            assert operator.calls == []

        asyncio.run(scenario())

    def test_expired_claim_is_taken_over(self):
        async def scenario():
            store = InMemoryResourceStore()
            operator = make_operator(store)
            await store.create(Resource.new(
                GROUP, TYPE, "w-1", {}, ResourceState.IN_QUEUE.value,
                annotations={
                    Annotation.LOCKED_BY_MANAGER: "operator-b",
                    Annotation.PROCESSING_STARTED_AT: (NOW - timedelta(seconds=301)).isoformat(),
                },
            ))

            await operator.handle_event(await event_for(store, "w-1"))

            assert operator.calls == [("create", "w-1")]
            resource = await store.get(GROUP, TYPE, "w-1")
            assert resource.state == ResourceState.SUCCEEDED.value

        asyncio.run(scenario())

    def test_stale_event_is_skipped(self):
        """The claim is written with the event's version; a newer store version wins."""
        async def scenario():
            store = InMemoryResourceStore()
            operator = make_operator(store)
            await store.create(Resource.new(GROUP, TYPE, "w-1", {}, ResourceState.IN_QUEUE.value))
            stale = await event_for(store, "w-1")
            await store.patch(GROUP, TYPE, "w-1", labels={"touched": "yes"})

            await operator.handle_event(stale)

            assert operator.calls == []
            assert operator.stats["skipped"] == 1

        asyncio.run(scenario())

    def test_unhandled_state_is_ignored(self):
        async def scenario():
            store = InMemoryResourceStore()
            operator = make_operator(store)
            await store.create(Resource.new(GROUP, TYPE, "w-1", {}, ResourceState.SUCCEEDED.value))

            await operator.handle_event(await event_for(store, "w-1"))

            resource = await store.get(GROUP, TYPE, "w-1")
            assert resource.resource_version == 1
            assert operator.calls == []

        asyncio.run(scenario())


# ============================================================================
# DELETE AND PLAN LOOKUP
# ============================================================================

class TestDeleteAndPlan:

    def test_not_found_during_delete_completes_delete(self):
        async def scenario():
            store = InMemoryResourceStore()
            operator = make_operator(store)
            await store.create(Resource.new(GROUP, TYPE, "w-1", {}, ResourceState.DELETE.value))

            await operator.handle_event(await event_for(store, "w-1"))

            assert operator.calls == [("delete", "w-1")]
            with pytest.raises(NotFound):
                await store.get(GROUP, TYPE, "w-1")

        asyncio.run(scenario())

    def test_plan_for_requires_plan_id(self):
        operator = make_operator(InMemoryResourceStore())
        resource = Resource.new(GROUP, TYPE, "w-1", {}, ResourceState.IN_QUEUE.value)
        with pytest.raises(InvalidInput):
            operator.plan_for(resource)
