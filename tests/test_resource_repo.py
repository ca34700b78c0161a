# ============================================================================
# POSTGRES RESOURCE STORE TESTS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Tests - PostgreSQL resource store against a mocked pool
# PURPOSE: Verify optimistic locking, patch merging and the watch cursor
# CREATED: 17 OCT 2026
# ============================================================================
"""
Postgres Resource Store Tests

The connection pool is mocked; each test feeds the rows the database
would return and inspects the parameters sent back to it.

Covers:
1. update() with a stale expected_version raises Conflict; a vanished row raises NotFound
2. patch() merges into the locked row and rejects a stale expected_version
3. delete() of a missing row raises NotFound
4. watch() replays, then re-reads a window below the cursor so a late
   commit with a lower sequence number is still delivered once

Run with:
    pytest tests/test_resource_repo.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.contracts import ResourceState, WatchEventType
from core.errors import Conflict, NotFound
from core.models import Resource
from repositories.resource_repo import PostgresResourceStore

GROUP = "deployment.servicefabrik.io"
TYPE = "directors"
CREATED = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def make_row(resource_id="inst-1", version=1, change_seq=1, state=ResourceState.SUCCEEDED.value,
             options=None, annotations=None, deleted=False, modified=False):
    return {
        "resource_group": GROUP,
        "resource_type": TYPE,
        "resource_id": resource_id,
        "labels": {},
        "annotations": annotations or {},
        "options": options or {},
        "state": state,
        "last_operation": None,
        "response": {},
        "error": None,
        "version": version,
        "change_seq": change_seq,
        "created_at": CREATED,
        "updated_at": CREATED + timedelta(seconds=5) if (modified or deleted) else CREATED,
        "deleted_at": CREATED + timedelta(seconds=5) if deleted else None,
    }


def make_result(rows=None, rowcount=None):
    rows = rows or []
    result = MagicMock()
    result.rowcount = len(rows) if rowcount is None else rowcount
    result.fetchone = AsyncMock(return_value=rows[0] if rows else None)
    result.fetchall = AsyncMock(return_value=list(rows))
    return result


def make_store(*results, **kwargs):
    """
    Store over a mocked pool whose connection returns results in order.

    Once the queued results run out every further statement returns no rows.
    """
    queued = list(results)

    async def execute(query, params=None):
        return queued.pop(0) if queued else make_result()

    conn = MagicMock()
    conn.execute = AsyncMock(side_effect=execute)
    conn.transaction.return_value.__aenter__.return_value = None
    conn.transaction.return_value.__aexit__.return_value = False

    pool = MagicMock()
    pool.connection.return_value.__aenter__.return_value = conn
    pool.connection.return_value.__aexit__.return_value = False
    return PostgresResourceStore(pool, **kwargs), conn


def sent_params(conn, index):
    return conn.execute.await_args_list[index].args[1]


# ============================================================================
# OPTIMISTIC LOCKING
# ============================================================================

class TestUpdate:

    def test_stale_expected_version_raises_conflict(self):
        async def scenario():
            store, conn = make_store(make_result(), make_result([make_row(version=3)]))
            resource = Resource.new(GROUP, TYPE, "inst-1", {}, ResourceState.IN_PROGRESS.value)

            with pytest.raises(Conflict):
                await store.update(resource, expected_version=2)

            assert sent_params(conn, 0)["expected_version"] == 2
            assert conn.execute.await_count == 2

        asyncio.run(scenario())

    def test_matching_version_returns_new_row(self):
        async def scenario():
            store, conn = make_store(make_result([make_row(version=3, state=ResourceState.IN_PROGRESS.value)]))
            resource = Resource.new(GROUP, TYPE, "inst-1", {}, ResourceState.IN_PROGRESS.value)

            updated = await store.update(resource, expected_version=2)

            assert updated.resource_version == 3
            assert updated.state == ResourceState.IN_PROGRESS.value
            assert conn.execute.await_count == 1

        asyncio.run(scenario())

    def test_vanished_row_raises_not_found(self):
        async def scenario():
            store, _ = make_store(make_result(), make_result())
            resource = Resource.new(GROUP, TYPE, "inst-1", {}, ResourceState.IN_PROGRESS.value)

            with pytest.raises(NotFound):
                await store.update(resource, expected_version=2)

        asyncio.run(scenario())


# ============================================================================
# PATCH
# ============================================================================

class TestPatch:

    def test_patch_merges_into_current_row(self):
        async def scenario():
            current = make_row(
                version=4,
                options={"context": {"platform": "cloudfoundry"}, "plan_id": "p-1"},
                annotations={"lockedByManager": "operator-a"},
            )
            written = make_row(version=5, state=ResourceState.IN_PROGRESS.value, modified=True)
            store, conn = make_store(make_result([current]), make_result([written]))

            await store.patch(
                GROUP, TYPE, "inst-1",
                options={"context": {"space_guid": "s-1"}},
                status={"state": ResourceState.IN_PROGRESS.value},
                annotations={"processingStartedAt": "2026-10-17T12:00:00+00:00"},
                expected_version=4,
            )

            params = sent_params(conn, 1)
            assert params["options"].obj == {
                "context": {"platform": "cloudfoundry", "space_guid": "s-1"},
                "plan_id": "p-1",
            }
            assert params["annotations"].obj == {
                "lockedByManager": "operator-a",
                "processingStartedAt": "2026-10-17T12:00:00+00:00",
            }
            assert params["state"] == ResourceState.IN_PROGRESS.value
            conn.transaction.assert_called_once()

        asyncio.run(scenario())

    def test_patch_with_stale_version_writes_nothing(self):
        async def scenario():
            store, conn = make_store(make_result([make_row(version=6)]))

            with pytest.raises(Conflict):
                await store.patch(GROUP, TYPE, "inst-1", labels={"state": "x"}, expected_version=5)

            assert conn.execute.await_count == 1

        asyncio.run(scenario())

    def test_patch_missing_row_raises_not_found(self):
        async def scenario():
            store, _ = make_store(make_result())
            with pytest.raises(NotFound):
                await store.patch(GROUP, TYPE, "inst-1", labels={"state": "x"})

        asyncio.run(scenario())


class TestDelete:

    def test_delete_missing_row_raises_not_found(self):
        async def scenario():
            store, _ = make_store(make_result(rowcount=0))
            with pytest.raises(NotFound):
                await store.delete(GROUP, TYPE, "inst-1")

        asyncio.run(scenario())


# ============================================================================
# WATCH CURSOR
# ============================================================================

class TestWatchCursor:

    def test_late_commit_below_cursor_is_delivered_once(self):
        async def scenario():
            replay = make_result([
                make_row("inst-1", version=1, change_seq=10, state=ResourceState.IN_QUEUE.value),
                make_row("inst-2", version=1, change_seq=12, state=ResourceState.IN_QUEUE.value),
            ])
            # inst-3's delete drew seq 11 but committed after inst-2's seq 12 was read
            first_poll = make_result([
                make_row("inst-3", version=2, change_seq=11, deleted=True),
                make_row("inst-2", version=1, change_seq=12, state=ResourceState.IN_QUEUE.value),
            ])
            second_poll = make_result([
                make_row("inst-3", version=2, change_seq=11, deleted=True),
                make_row("inst-2", version=1, change_seq=12, state=ResourceState.IN_QUEUE.value),
                make_row("inst-1", version=2, change_seq=13, state=ResourceState.IN_PROGRESS.value, modified=True),
            ])
            store, conn = make_store(replay, first_poll, second_poll, poll_interval=0, rescan_window=5)

            events = []
            async for event in store.watch(GROUP, TYPE, timeout=5):
                events.append((event.type, event.resource.resource_id, event.resource.resource_version))
                if len(events) == 4:
                    break

            assert events == [
                (WatchEventType.ADDED, "inst-1", 1),
                (WatchEventType.ADDED, "inst-2", 1),
                (WatchEventType.DELETED, "inst-3", 2),
                (WatchEventType.MODIFIED, "inst-1", 2),
            ]
            assert sent_params(conn, 0) == (GROUP, TYPE)
            assert sent_params(conn, 1) == (GROUP, TYPE, 7)
            assert sent_params(conn, 2) == (GROUP, TYPE, 7)

        asyncio.run(scenario())

    def test_state_filter_applies_to_polled_rows(self):
        async def scenario():
            replay = make_result([make_row("inst-1", version=1, change_seq=3, state=ResourceState.IN_QUEUE.value)])
            poll = make_result([
                make_row("inst-1", version=2, change_seq=4, state=ResourceState.SUCCEEDED.value, modified=True),
                make_row("inst-2", version=1, change_seq=5, state=ResourceState.IN_QUEUE.value),
            ])
            store, _ = make_store(replay, poll, poll_interval=0)

            events = []
            async for event in store.watch(GROUP, TYPE, states=[ResourceState.IN_QUEUE.value], timeout=5):
                events.append((event.type, event.resource.resource_id))
                if len(events) == 2:
                    break

            assert events == [(WatchEventType.ADDED, "inst-1"), (WatchEventType.ADDED, "inst-2")]

        asyncio.run(scenario())
