# ============================================================================
# CONTROL PLANE TESTS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Tests - Process wiring
# PURPOSE: Verify component wiring, start/stop and tombstone housekeeping
# CREATED: 17 OCT 2026
# ============================================================================
"""
Control Plane Tests

Covers:
1. Components enabled by the downstream clients supplied
2. start / stop lifecycle and stats
3. Tombstone purge runs once per retention period and survives errors
4. build_store backend selection

Run with:
    pytest tests/test_control_plane.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config import Defaults, StoreDefaults
from infrastructure.memory_store import InMemoryResourceStore
from infrastructure.storage import InMemoryMetadataStore
from operators.deployment import DeploymentOperator, DirectorTaskPoller
from operators.restore import RestoreOperator, RestoreStatusPoller
from operators.unlock_poller import UnlockPoller
from services.control_plane import ControlPlane, build_store


class PurgingStore(InMemoryResourceStore):
    """In-memory store that records tombstone purges."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.purge_calls = []
        self.failures = failures

    async def purge_deleted(self, older_than_seconds):
        self.purge_calls.append(older_than_seconds)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("connection reset")
        return 2


def make_defaults(retention=3600.0):
    return Defaults(store=StoreDefaults(backend="memory", tombstone_retention_seconds=retention))


# ============================================================================
# WIRING
# ============================================================================

class TestWiring:

    def test_only_unlock_poller_without_clients(self):
        plane = ControlPlane(InMemoryResourceStore(), MagicMock(), defaults=make_defaults())

        assert plane.operators == []
        assert [type(p) for p in plane.pollers] == [UnlockPoller]
        assert plane.restore_service is None

    def test_all_components_with_clients(self):
        plane = ControlPlane(
            InMemoryResourceStore(),
            MagicMock(),
            director=AsyncMock(),
            cloud=AsyncMock(),
            metadata_store=InMemoryMetadataStore(),
            deployment_factory=MagicMock(),
            defaults=make_defaults(),
            owner_id="replica-1",
        )

        assert [type(o) for o in plane.operators] == [DeploymentOperator, RestoreOperator]
        assert [type(p) for p in plane.pollers] == [UnlockPoller, DirectorTaskPoller, RestoreStatusPoller]
        assert all(o.owner_id == "replica-1" for o in plane.operators)
        assert len(plane.components) == 5

    def test_restore_needs_every_client(self):
        plane = ControlPlane(
            InMemoryResourceStore(),
            MagicMock(),
            director=AsyncMock(),
            metadata_store=InMemoryMetadataStore(),
            defaults=make_defaults(),
        )
        assert plane.restore_service is None
        assert plane.operators == []


# ============================================================================
# LIFECYCLE
# ============================================================================

class TestLifecycle:

    def test_start_and_stop(self):
        async def scenario():
            plane = ControlPlane(
                InMemoryResourceStore(),
                MagicMock(),
                deployment_factory=MagicMock(),
                defaults=make_defaults(),
            )
            await plane.start()
            await plane.start()
            assert plane.is_running
            assert plane._housekeeping_task is None

            stats = plane.stats()
            assert stats["running"] is True
            names = [p["name"] for p in stats["pollers"]]
            assert names[0] == "UnlockPoller"
            assert names[1].startswith("DirectorTaskPoller")
            assert stats["operators"][0]["running"] is True

            await plane.stop()
            assert not plane.is_running
            assert plane.stats()["operators"][0]["running"] is False

        asyncio.run(scenario())

    def test_component_stop_error_does_not_block_others(self):
        async def scenario():
            plane = ControlPlane(InMemoryResourceStore(), MagicMock(), defaults=make_defaults())
            broken = MagicMock()
            broken.stop = AsyncMock(side_effect=RuntimeError("stuck"))
            plane.operators.append(broken)
            plane.unlock_poller.stop = AsyncMock()

            await plane.stop()

            plane.unlock_poller.stop.assert_awaited_once()
            assert not plane.is_running

        asyncio.run(scenario())


# ============================================================================
# HOUSEKEEPING
# ============================================================================

class TestHousekeeping:

    def test_purges_each_retention_period(self):
        async def scenario():
            store = PurgingStore()
            plane = ControlPlane(store, MagicMock(), defaults=make_defaults(retention=0.01))
            await plane.start()
            await asyncio.sleep(0.1)
            await plane.stop()

            assert len(store.purge_calls) >= 2
            assert set(store.purge_calls) == {0.01}
            assert plane.stats()["tombstones_purged"] == 2 * len(store.purge_calls)
            assert plane._housekeeping_task is None

        asyncio.run(scenario())

    def test_purge_error_keeps_loop_alive(self):
        async def scenario():
            store = PurgingStore(failures=1)
            plane = ControlPlane(store, MagicMock(), defaults=make_defaults(retention=0.01))
            await plane.start()
            await asyncio.sleep(0.1)
            await plane.stop()

            assert len(store.purge_calls) >= 2
            assert plane.stats()["tombstones_purged"] == 2 * (len(store.purge_calls) - 1)

        asyncio.run(scenario())

    def test_no_purge_before_first_period(self):
        async def scenario():
            store = PurgingStore()
            plane = ControlPlane(store, MagicMock(), defaults=make_defaults(retention=3600))
            await plane.start()
            await asyncio.sleep(0.01)
            await plane.stop()
            assert store.purge_calls == []

        asyncio.run(scenario())


# ============================================================================
# STORE SELECTION
# ============================================================================

class TestBuildStore:

    def test_memory_backend(self):
        store = asyncio.run(build_store(make_defaults()))
        assert isinstance(store, InMemoryResourceStore)

    def test_unknown_backend(self):
        defaults = Defaults(store=StoreDefaults(backend="etcd"))
        with pytest.raises(ValueError):
            asyncio.run(build_store(defaults))
