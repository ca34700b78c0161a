# ============================================================================
# LOCK MODEL
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Advisory lock document
# PURPOSE: Typed view of lock resources (lock.servicefabrik.io/deploymentlocks)
# CREATED: 17 OCT 2026
# ============================================================================
"""
Lock Model

A lock is an ordinary Resource of the reserved lock type, keyed by the id
of the thing it protects. spec.options holds:

    {
        "lockType": "READ" | "WRITE",
        "lockTime": "<iso timestamp>",
        "lockTTLSeconds": 600,
        "lockedResourceDetails": {
            "resourceGroup": "backup.servicefabrik.io",
            "resourceType": "defaultbackups",
            "resourceId": "<backup_guid>",
            "operation": "backup"
        }
    }

A lock is active iff state == LOCKED and now - lockTime < lockTTL.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.contracts import LockType, ResourceState
from core.models.resource import Resource


class LockedResourceDetails(BaseModel):
    """Which operation on which resource holds the lock."""

    model_config = ConfigDict(populate_by_name=True)

    resource_group: Optional[str] = Field(default=None, alias="resourceGroup")
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    resource_id: Optional[str] = Field(default=None, alias="resourceId")
    operation: str = Field(default="unknown", description="Operation acquiring the lock, e.g. backup")


class LockOptions(BaseModel):
    """spec.options of a lock resource."""

    model_config = ConfigDict(populate_by_name=True)

    lock_type: LockType = Field(default=LockType.WRITE, alias="lockType")
    lock_time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="lockTime",
    )
    lock_ttl_seconds: Optional[int] = Field(
        default=None,
        alias="lockTTLSeconds",
        description="None means the lock never expires on its own",
    )
    locked_resource_details: LockedResourceDetails = Field(
        default_factory=LockedResourceDetails,
        alias="lockedResourceDetails",
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """
        Check if the TTL has elapsed.

        Args:
            now: Current time (defaults to now in UTC)

        Returns:
            True if lock_time + ttl <= now
        """
        if self.lock_ttl_seconds is None:
            return False
        if now is None:
            now = datetime.now(timezone.utc)
        return now - self.lock_time >= timedelta(seconds=self.lock_ttl_seconds)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Lock(BaseModel):
    """A lock resource, deserialized once at the store boundary."""

    target_id: str
    state: Optional[str] = None
    options: LockOptions
    resource_version: int = 0

    @classmethod
    def from_resource(cls, resource: Resource) -> "Lock":
        return cls(
            target_id=resource.resource_id,
            state=resource.state,
            options=LockOptions.model_validate(resource.options or {}),
            resource_version=resource.resource_version,
        )

    @property
    def operation(self) -> str:
        return self.options.locked_resource_details.operation

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.state == ResourceState.LOCKED.value and not self.options.is_expired(now)

    def is_write_locked(self, now: Optional[datetime] = None) -> bool:
        return self.is_active(now) and self.options.lock_type == LockType.WRITE


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["LockedResourceDetails", "LockOptions", "Lock"]
