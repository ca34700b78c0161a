# ============================================================================
# CONFIGURATION DEFAULTS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Default configuration values
# PURPOSE: Centralized defaults for lock TTLs, polling, watches and restores
# CREATED: 31 JAN 2026
# UPDATED: 17 OCT 2026 - Broker control plane settings
# ============================================================================
"""
Configuration Defaults

Provides sensible defaults for locking, polling and watch behaviour.
These can be overridden via environment variables.

Design:
- Immutable dataclasses for defaults
- Environment variable overrides
- Type-safe access
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(frozen=True)
class LockDefaults:
    """
    Defaults for the advisory lock manager.

    Per-operation TTL settings, falling back to the lifecycle default.
    """
    # Lifecycle default (seconds)
    default_ttl_seconds: int = 86400  # 24 hours

    # Operation-specific TTLs
    operation_ttls: Dict[str, int] = field(default_factory=lambda: {
        "backup": 600,  # 10 min
        "restore": 86400,
        "create": 86400,
        "update": 86400,
        "delete": 86400,
    })

    # Unlock retry policy
    unlock_max_attempts: int = 3
    unlock_retry_delay_seconds: float = 2.0

    # Lock release poller
    unlock_poll_interval_seconds: float = 3.0

    def ttl_for(self, operation: Optional[str]) -> int:
        """Get TTL for an operation, falling back to the default."""
        if operation is None:
            return self.default_ttl_seconds
        return self.operation_ttls.get(operation, self.default_ttl_seconds)

    @classmethod
    def from_env(cls) -> "LockDefaults":
        """Create from environment variables."""
        default_ttl = int(os.getenv("LOCK_DEFAULT_TTL_SECONDS", 86400))
        return cls(
            default_ttl_seconds=default_ttl,
            operation_ttls={
                "backup": int(os.getenv("LOCK_BACKUP_TTL_SECONDS", 600)),
                "restore": int(os.getenv("LOCK_RESTORE_TTL_SECONDS", default_ttl)),
                "create": int(os.getenv("LOCK_CREATE_TTL_SECONDS", default_ttl)),
                "update": int(os.getenv("LOCK_UPDATE_TTL_SECONDS", default_ttl)),
                "delete": int(os.getenv("LOCK_DELETE_TTL_SECONDS", default_ttl)),
            },
            unlock_max_attempts=int(os.getenv("UNLOCK_MAX_ATTEMPTS", 3)),
            unlock_retry_delay_seconds=float(os.getenv("UNLOCK_RETRY_DELAY_SECONDS", 2.0)),
            unlock_poll_interval_seconds=float(os.getenv("UNLOCK_POLL_INTERVAL_SECONDS", 3.0)),
        )


@dataclass(frozen=True)
class PollerDefaults:
    """
    Defaults for lease-coordinated task pollers.

    The lease is fresh while its age is below interval + relaxation.
    """
    poll_interval_seconds: float = 50.0
    relaxation_seconds: float = 5.0

    # How long an operator's processing claim blocks other replicas
    processing_timeout_seconds: float = 300.0

    @property
    def lease_freshness_seconds(self) -> float:
        return self.poll_interval_seconds + self.relaxation_seconds

    @classmethod
    def from_env(cls) -> "PollerDefaults":
        """Create from environment variables."""
        return cls(
            poll_interval_seconds=float(os.getenv("POLLER_INTERVAL_SECONDS", 50)),
            relaxation_seconds=float(os.getenv("POLLER_RELAXATION_SECONDS", 5)),
            processing_timeout_seconds=float(os.getenv("PROCESSING_TIMEOUT_SECONDS", 300)),
        )


@dataclass(frozen=True)
class WatchDefaults:
    """
    Defaults for watch streams.

    Streams are re-opened ahead of any server-side timeout.
    """
    refresh_interval_seconds: float = 60.0
    error_delay_seconds: float = 30.0
    poller_refresh_interval_seconds: float = 120.0

    @classmethod
    def from_env(cls) -> "WatchDefaults":
        """Create from environment variables."""
        return cls(
            refresh_interval_seconds=float(os.getenv("WATCH_REFRESH_INTERVAL_SECONDS", 60)),
            error_delay_seconds=float(os.getenv("WATCH_ERROR_DELAY_SECONDS", 30)),
            poller_refresh_interval_seconds=float(os.getenv("POLLER_WATCH_REFRESH_INTERVAL_SECONDS", 120)),
        )


@dataclass(frozen=True)
class RestoreDefaults:
    """Defaults for the restore workflow and its history."""
    history_retention_days: int = 60
    restore_poll_interval_seconds: float = 50.0

    @classmethod
    def from_env(cls) -> "RestoreDefaults":
        """Create from environment variables."""
        return cls(
            history_retention_days=int(os.getenv("RESTORE_HISTORY_DAYS", 60)),
            restore_poll_interval_seconds=float(os.getenv("RESTORE_POLL_INTERVAL_SECONDS", 50)),
        )


@dataclass(frozen=True)
class StoreDefaults:
    """Defaults for the resource store backend."""
    backend: str = "postgres"  # postgres | memory
    watch_poll_interval_seconds: float = 1.0
    tombstone_retention_seconds: float = 3600.0
    service_cache_size: int = 64

    @classmethod
    def from_env(cls) -> "StoreDefaults":
        """Create from environment variables."""
        return cls(
            backend=os.getenv("RESOURCE_STORE_BACKEND", "postgres").lower(),
            watch_poll_interval_seconds=float(os.getenv("WATCH_POLL_INTERVAL_SECONDS", 1.0)),
            tombstone_retention_seconds=float(os.getenv("TOMBSTONE_RETENTION_SECONDS", 3600)),
            service_cache_size=int(os.getenv("SERVICE_CACHE_SIZE", 64)),
        )


# ============================================================================
# GLOBAL DEFAULTS INSTANCE
# ============================================================================

@dataclass
class Defaults:
    """Container for all default configurations."""
    locks: LockDefaults = field(default_factory=LockDefaults)
    poller: PollerDefaults = field(default_factory=PollerDefaults)
    watch: WatchDefaults = field(default_factory=WatchDefaults)
    restore: RestoreDefaults = field(default_factory=RestoreDefaults)
    store: StoreDefaults = field(default_factory=StoreDefaults)

    @classmethod
    def from_env(cls) -> "Defaults":
        """Create all defaults from environment variables."""
        return cls(
            locks=LockDefaults.from_env(),
            poller=PollerDefaults.from_env(),
            watch=WatchDefaults.from_env(),
            restore=RestoreDefaults.from_env(),
            store=StoreDefaults.from_env(),
        )


_defaults: Optional[Defaults] = None


def get_defaults() -> Defaults:
    """Get global defaults instance."""
    global _defaults
    if _defaults is None:
        _defaults = Defaults.from_env()
    return _defaults


def reset_defaults() -> None:
    """Reset defaults (for testing)."""
    global _defaults
    _defaults = None


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "LockDefaults",
    "PollerDefaults",
    "WatchDefaults",
    "RestoreDefaults",
    "StoreDefaults",
    "Defaults",
    "get_defaults",
    "reset_defaults",
]
