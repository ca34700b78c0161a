# ============================================================================
# LOCK MANAGER TESTS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Tests - Advisory locks on the resource store
# PURPOSE: Verify TTL contention, unlock semantics and lock modes
# CREATED: 17 OCT 2026
# ============================================================================
"""
Lock Manager Tests

Covers:
1. Contention: active lock raises AlreadyLocked with the holder's details
2. TTL expiry: an expired lock is overwritten in place
3. Unlock idempotence: unlock then lock always succeeds
4. Create race: Conflict on create reports the winner's lock
5. Unlock retries, Conflict / NotFound treated as released
6. READ vs WRITE lock type and check_write_lock_status

Run with:
    pytest tests/test_locking.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config import LockDefaults
from core.contracts import LockType, ResourceGroup, ResourceState, ResourceType
from core.errors import AlreadyLocked, Conflict, InvalidInput, NotFound
from core.models import LockedResourceDetails, LockOptions, Plan, Resource
from infrastructure.locking import LockManager
from infrastructure.memory_store import InMemoryResourceStore


class FakeClock:
    """Settable time source."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_manager(store=None, clock=None, **defaults):
    return LockManager(
        store if store is not None else InMemoryResourceStore(),
        LockDefaults(unlock_retry_delay_seconds=0, **defaults),
        clock=clock or FakeClock(),
    )


def lock_resource(target_id: str, operation: str, version: int = 1) -> Resource:
    resource = Resource.new(
        ResourceGroup.LOCK,
        ResourceType.DEPLOYMENT_LOCKS,
        target_id,
        options=LockOptions(
            lock_ttl_seconds=86400,
            locked_resource_details=LockedResourceDetails(operation=operation),
        ).to_document(),
        state=ResourceState.LOCKED.value,
    )
    resource.metadata.resource_version = version
    return resource


# ============================================================================
# CONTENTION AND TTL
# ============================================================================

class TestLockContention:
    """lock() against existing locks."""

    def test_backup_lock_blocks_update_until_ttl(self):
        """backup TTL is 600s: blocked at +10s, acquired at +610s."""
        async def scenario():
            clock = FakeClock()
            locks = make_manager(clock=clock)

            await locks.lock("inst-1", {"operation": "backup"})
            lock = await locks.get_lock("inst-1")
            assert lock.options.lock_ttl_seconds == 600

            clock.advance(10)
            with pytest.raises(AlreadyLocked) as exc_info:
                await locks.lock("inst-1", {"operation": "update"})
            assert exc_info.value.lock_for_operation == "backup"
            assert exc_info.value.created_at == lock.options.lock_time

            clock.advance(600)
            await locks.lock("inst-1", {"operation": "update"})
            lock = await locks.get_lock("inst-1")
            assert lock.operation == "update"

        asyncio.run(scenario())

    def test_expired_lock_is_overwritten_in_place(self):
        """Takeover updates the same lock resource, version advances."""
        async def scenario():
            clock = FakeClock()
            store = InMemoryResourceStore()
            locks = make_manager(store, clock)

            first = await locks.lock("inst-1", {"operation": "backup"})
            clock.advance(601)
            second = await locks.lock("inst-1", {"operation": "restore"})

            assert int(second) > int(first)
            assert len(await store.query(ResourceGroup.LOCK, ResourceType.DEPLOYMENT_LOCKS)) == 1

        asyncio.run(scenario())

    def test_only_one_concurrent_lock_succeeds(self):
        """Concurrent lock() calls on one id: exactly one token."""
        async def scenario():
            locks = make_manager()
            results = await asyncio.gather(
                *(locks.lock("inst-1", {"operation": "update"}) for _ in range(5)),
                return_exceptions=True,
            )
            tokens = [r for r in results if isinstance(r, str)]
            refused = [r for r in results if isinstance(r, AlreadyLocked)]
            assert len(tokens) == 1
            assert len(refused) == 4

        asyncio.run(scenario())

    def test_create_conflict_reports_winner(self):
        """Conflict on create re-reads and raises AlreadyLocked with the winner's operation."""
        async def scenario():
            store = MagicMock()
            store.get = AsyncMock(side_effect=[NotFound("no lock"), lock_resource("inst-1", "restore")])
            store.create = AsyncMock(side_effect=Conflict("duplicate", resource_id="inst-1"))
            locks = make_manager(store)

            with pytest.raises(AlreadyLocked) as exc_info:
                await locks.lock("inst-1", {"operation": "update"})
            assert exc_info.value.lock_for_operation == "restore"
            assert store.create.await_count == 1

        asyncio.run(scenario())

    def test_operation_is_required(self):
        async def scenario():
            locks = make_manager()
            with pytest.raises(InvalidInput):
                await locks.lock("inst-1", {"resourceId": "r-1"})

        asyncio.run(scenario())


# ============================================================================
# UNLOCK
# ============================================================================

class TestUnlock:
    """unlock() semantics."""

    def test_unlock_then_lock_succeeds(self):
        """Unlocking releases regardless of the remaining TTL."""
        async def scenario():
            locks = make_manager()
            token = await locks.lock("inst-1", {"operation": "restore"})
            await locks.unlock("inst-1", token)

            lock = await locks.get_lock("inst-1")
            assert lock.state == ResourceState.UNLOCKED.value
            assert not lock.is_active()

            await locks.lock("inst-1", {"operation": "update"})

        asyncio.run(scenario())

    def test_stale_token_counts_as_released(self):
        """Conflict on unlock (lock already advanced) is success."""
        async def scenario():
            locks = make_manager()
            token = await locks.lock("inst-1", {"operation": "restore"})
            await locks.unlock("inst-1", token)
            await locks.unlock("inst-1", token)

        asyncio.run(scenario())

    def test_missing_lock_counts_as_released(self):
        async def scenario():
            locks = make_manager()
            await locks.unlock("never-locked")

        asyncio.run(scenario())

    def test_transient_error_is_retried(self):
        async def scenario():
            store = MagicMock()
            store.patch = AsyncMock(side_effect=[RuntimeError("connection reset"), lock_resource("inst-1", "backup")])
            locks = make_manager(store)

            await locks.unlock("inst-1")
            assert store.patch.await_count == 2

        asyncio.run(scenario())

    def test_error_after_last_attempt_is_raised(self):
        async def scenario():
            store = MagicMock()
            store.patch = AsyncMock(side_effect=RuntimeError("connection reset"))
            locks = make_manager(store)

            with pytest.raises(RuntimeError):
                await locks.unlock("inst-1", max_attempts=3)
            assert store.patch.await_count == 3

        asyncio.run(scenario())


# ============================================================================
# LOCK TYPE AND STATUS
# ============================================================================

class TestLockType:
    """READ vs WRITE resolution."""

    @pytest.fixture
    def plan(self):
        return Plan(id="plan-1", name="small", service_id="svc-1", parallel_operations=["backup", "update"])

    def test_parallel_operation_takes_read_lock(self, plan):
        assert make_manager().lock_type_for("backup", plan) == LockType.READ

    def test_write_operation_ignores_plan(self, plan):
        """update is a write operation even when the plan lists it as parallel."""
        assert make_manager().lock_type_for("update", plan) == LockType.WRITE

    def test_no_plan_means_write(self):
        assert make_manager().lock_type_for("backup") == LockType.WRITE

    def test_check_write_lock_status(self, plan):
        async def scenario():
            clock = FakeClock()
            locks = make_manager(clock=clock)

            status = await locks.check_write_lock_status("inst-1")
            assert status == {"is_write_locked": False, "lock_details": None}

            await locks.lock("inst-1", {"operation": "backup"}, plan)
            status = await locks.check_write_lock_status("inst-1")
            assert status["is_write_locked"] is False

            clock.advance(601)
            await locks.lock("inst-1", {"operation": "restore", "resourceId": "r-1"}, plan)
            status = await locks.check_write_lock_status("inst-1")
            assert status["is_write_locked"] is True
            assert status["lock_details"]["lockedResourceDetails"]["operation"] == "restore"
            assert status["lock_details"]["lockType"] == "WRITE"

        asyncio.run(scenario())
