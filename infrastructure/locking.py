# ============================================================================
# DISTRIBUTED LOCKING SERVICE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Infrastructure - Concurrency control
# PURPOSE: Advisory per-instance locks stored as resources
# CREATED: 02 FEB 2026
# UPDATED: 17 OCT 2026 - TTL locks on the resource store
# ============================================================================
"""
Distributed Locking Service

Advisory mutual exclusion per target id (usually a service instance id).
Each lock is a resource in lock.servicefabrik.io/deploymentlocks whose
id is the protected target:

- lock(): take the lock unless an active one exists
- unlock(): mark UNLOCKED (the resource is kept and reused)
- check_write_lock_status(): read-only activity check

Locks are TTL-based, not fenced. An expired lock is overwritten in
place by the next successful lock() call. Races are settled by the
store's optimistic concurrency: whoever loses sees Conflict and gets
AlreadyLocked carrying the winner's details.

Usage:
    from infrastructure.locking import LockManager

    locks = LockManager(store)

    token = await locks.lock(instance_id, {"operation": "backup", ...}, plan)
    try:
        ...
    finally:
        await locks.unlock(instance_id, token)
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from core.config import LockDefaults, get_defaults
from core.contracts import (
    LockType,
    ResourceGroup,
    ResourceState,
    ResourceType,
    WRITE_OPERATIONS,
)
from core.errors import AlreadyLocked, ErrorKind, InvalidInput, NotFound, classify
from core.interfaces import ResourceStore
from core.logging import log_context, log_checkpoint
from core.models import Lock, LockedResourceDetails, LockOptions, Plan, Resource

logger = logging.getLogger(__name__)


class LockManager:
    """
    TTL-based advisory locks on the resource store.

    Lock type is WRITE unless the operation is parallel-safe for the
    plan and not one of the hard-coded write operations.
    """

    LOCK_GROUP = ResourceGroup.LOCK
    LOCK_TYPE = ResourceType.DEPLOYMENT_LOCKS

    def __init__(
        self,
        store: ResourceStore,
        defaults: Optional[LockDefaults] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize lock manager.

        Args:
            store: Resource store holding lock resources
            defaults: TTL and unlock retry settings (defaults to env config)
            clock: Time source, returns an aware UTC datetime
        """
        self.store = store
        self.defaults = defaults or get_defaults().locks
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # =========================================================================
    # LOCK
    # =========================================================================

    def lock_type_for(self, operation: str, plan: Optional[Plan] = None) -> LockType:
        """Resolve the lock mode for an operation under a plan."""
        if operation in WRITE_OPERATIONS:
            return LockType.WRITE
        if plan is not None and plan.allows_parallel(operation):
            return LockType.READ
        return LockType.WRITE

    async def lock(
        self,
        target_id: str,
        details: Union[LockedResourceDetails, Dict[str, Any]],
        plan: Optional[Plan] = None,
    ) -> str:
        """
        Acquire the lock on target_id.

        Args:
            target_id: Id of the protected thing (instance id)
            details: Who is locking (resourceGroup/Type/Id, operation)
            plan: Plan of the instance; decides READ vs WRITE

        Returns:
            Lease token (the lock resource's version)

        Raises:
            AlreadyLocked: An active lock exists (carries its details)
            InvalidInput: details has no operation
        """
        if isinstance(details, dict):
            details = LockedResourceDetails.model_validate(details)
        if not details.operation or details.operation == "unknown":
            raise InvalidInput("'operation' is required to acquire lock", field="operation")

        now = self._clock()
        options = LockOptions(
            lock_type=self.lock_type_for(details.operation, plan),
            lock_time=now,
            lock_ttl_seconds=self.defaults.ttl_for(details.operation),
            locked_resource_details=details,
        )

        with log_context(resource_id=target_id, resource_type=self.LOCK_TYPE, operation=details.operation):
            logger.info(f"Attempting to acquire lock on {target_id} for {details.operation}")

            try:
                existing = Lock.from_resource(
                    await self.store.get(self.LOCK_GROUP, self.LOCK_TYPE, target_id)
                )
            except NotFound:
                existing = None

            try:
                if existing is None:
                    saved = await self.store.create(
                        Resource.new(
                            self.LOCK_GROUP,
                            self.LOCK_TYPE,
                            target_id,
                            options=options.to_document(),
                            state=ResourceState.LOCKED.value,
                        )
                    )
                else:
                    if existing.is_active(now):
                        logger.error(
                            f"Resource {target_id} was locked for {existing.operation} operation "
                            f"with id {existing.options.locked_resource_details.resource_id} "
                            f"at {existing.options.lock_time.isoformat()}"
                        )
                        raise self._already_locked(existing)
                    saved = await self._overwrite(target_id, options, existing.resource_version)
            except Exception as e:
                if classify(e) is not ErrorKind.CONFLICT:
                    raise
                # Another replica won the race; report its lock
                winner = Lock.from_resource(await self.store.get(self.LOCK_GROUP, self.LOCK_TYPE, target_id))
                logger.warning(f"Lost lock race on {target_id} to {winner.operation}")
                raise self._already_locked(winner) from e

            token = str(saved.resource_version)
            log_checkpoint("lock_acquired", {
                "target_id": target_id,
                "operation": details.operation,
                "lock_type": options.lock_type.value,
                "ttl_seconds": options.lock_ttl_seconds,
                "token": token,
            }, logger=logger)
            return token

    async def _overwrite(self, target_id: str, options: LockOptions, expected_version: int) -> Resource:
        current = await self.store.get(self.LOCK_GROUP, self.LOCK_TYPE, target_id)
        current.options = options.to_document()
        current.status.state = ResourceState.LOCKED.value
        current.status.error = None
        return await self.store.update(current, expected_version=expected_version)

    @staticmethod
    def _already_locked(existing: Lock) -> AlreadyLocked:
        return AlreadyLocked(
            existing.target_id,
            created_at=existing.options.lock_time,
            lock_for_operation=existing.operation,
        )

    # =========================================================================
    # UNLOCK
    # =========================================================================

    async def unlock(
        self,
        target_id: str,
        lease_token: Optional[str] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        """
        Release the lock on target_id.

        Conflict and NotFound mean someone else already advanced or
        removed the lock; both count as success. Other errors are retried
        with a fixed delay and re-raised once attempts are exhausted.

        Args:
            target_id: Id of the protected thing
            lease_token: Token returned by lock(); when given, only that
                lock generation is released
            max_attempts: Attempts before giving up (default from config)
            retry_delay: Seconds between attempts (default from config)
        """
        if not target_id:
            raise InvalidInput("'target_id' is required to release lock", field="target_id")

        max_attempts = max_attempts or self.defaults.unlock_max_attempts
        retry_delay = self.defaults.unlock_retry_delay_seconds if retry_delay is None else retry_delay
        expected_version = int(lease_token) if lease_token else None

        with log_context(resource_id=target_id, resource_type=self.LOCK_TYPE):
            logger.info(f"Attempting to unlock {target_id}")
            for attempt in range(1, max_attempts + 1):
                try:
                    await self.store.patch(
                        self.LOCK_GROUP,
                        self.LOCK_TYPE,
                        target_id,
                        status={"state": ResourceState.UNLOCKED.value},
                        expected_version=expected_version,
                    )
                    log_checkpoint("lock_released", {"target_id": target_id, "attempt": attempt}, logger=logger)
                    return
                except Exception as e:
                    kind = classify(e)
                    if kind in (ErrorKind.CONFLICT, ErrorKind.NOT_FOUND):
                        logger.info(f"Lock on {target_id} already released or replaced ({kind.value})")
                        return
                    if attempt >= max_attempts:
                        logger.error(f"Could not unlock {target_id} after {attempt} attempts: {e}")
                        raise
                    logger.warning(f"Unlock attempt {attempt} for {target_id} failed: {e}")
                    await asyncio.sleep(retry_delay)

    # =========================================================================
    # STATUS
    # =========================================================================

    async def get_lock(self, target_id: str) -> Optional[Lock]:
        """Read the lock for target_id, or None if it never existed."""
        try:
            return Lock.from_resource(await self.store.get(self.LOCK_GROUP, self.LOCK_TYPE, target_id))
        except NotFound:
            return None

    async def check_write_lock_status(self, target_id: str) -> Dict[str, Any]:
        """
        Check whether target_id is write-locked right now.

        Returns:
            {"is_write_locked": bool, "lock_details": LockOptions document or None}
        """
        existing = await self.get_lock(target_id)
        if existing is not None and existing.is_write_locked(self._clock()):
            logger.info(
                f"Resource {target_id} is write locked for {existing.operation} "
                f"since {existing.options.lock_time.isoformat()}"
            )
            return {"is_write_locked": True, "lock_details": existing.options.to_document()}
        return {"is_write_locked": False, "lock_details": None}


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["LockManager"]
