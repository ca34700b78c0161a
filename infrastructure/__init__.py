# ============================================================================
# INFRASTRUCTURE MODULE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Infrastructure - Locking, stores and storage operations
# PURPOSE: Lock manager, in-memory resource store and metadata file stores
# CREATED: 29 JAN 2026
# UPDATED: 17 OCT 2026 - Broker control plane infrastructure
# ============================================================================
"""
Infrastructure module for the broker control plane.

Provides:
- LockManager: TTL-based advisory locks on the resource store
- InMemoryResourceStore: process-local ResourceStore
- BlobMetadataStore / InMemoryMetadataStore: backup and restore metadata files
- AsyncBaseRepository / RepositoryError: shared store error handling

Usage:
    from infrastructure import LockManager, InMemoryResourceStore

    store = InMemoryResourceStore()
    locks = LockManager(store)
    token = await locks.lock(instance_id, {"operation": "update"})
"""

from infrastructure.base_repository import (
    AsyncBaseRepository,
    RepositoryError,
)
from infrastructure.locking import LockManager
from infrastructure.memory_store import InMemoryResourceStore
from infrastructure.storage import (
    BlobMetadataStore,
    InMemoryMetadataStore,
)

__all__ = [
    # Repository base
    'AsyncBaseRepository',
    'RepositoryError',
    # Locking
    'LockManager',
    # Stores
    'InMemoryResourceStore',
    'BlobMetadataStore',
    'InMemoryMetadataStore',
]
