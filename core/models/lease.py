# ============================================================================
# POLLER LEASE MODEL
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Lease annotations for multi-replica polling
# PURPOSE: Time-boxed advisory ownership stored in resource annotations
# CREATED: 03 FEB 2026
# UPDATED: 17 OCT 2026 - Annotation leases for task pollers and operators
# ============================================================================
"""
Poller Lease Model

Annotation-based leases for crash-safe poller coordination. A lease is not
a separate resource: it is a JSON value stored under a resource annotation
meaning "owner_id is polling this resource's external task as of lock_time".

Key properties:
- Lease is advisory, re-checked on every poll cycle
- Lease goes stale if not refreshed within interval + relaxation
- Any replica may take over a stale lease
- Crash recovery needs no explicit release
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class PollerLease(BaseModel):
    """
    Lease annotation held by a task poller.

    Stored under the lockedByTaskPoller annotation as
    {"lockTime": "<iso>", "ownerId": "<uuid>"}.
    """

    model_config = ConfigDict(populate_by_name=True)

    lock_time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="lockTime",
        description="When the holder last acquired or refreshed the lease",
    )
    owner_id: str = Field(
        ...,
        max_length=64,
        alias="ownerId",
        description="UUID of the replica holding the lease",
    )

    def is_fresh(self, window_seconds: float, now: Optional[datetime] = None) -> bool:
        """
        Check if the lease is still within its freshness window.

        Args:
            window_seconds: Poll interval plus relaxation margin
            now: Current time (defaults to now in UTC)

        Returns:
            True if now - lock_time < window
        """
        if now is None:
            now = datetime.now(timezone.utc)
        return now - self.lock_time < timedelta(seconds=window_seconds)

    def to_annotation(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, mode="json"))

    @classmethod
    def from_annotation(cls, value: Optional[str]) -> Optional["PollerLease"]:
        """Parse an annotation value; empty or malformed values mean no lease."""
        if not value:
            return None
        try:
            return cls.model_validate(json.loads(value))
        except (ValueError, ValidationError):
            return None


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ['PollerLease']
