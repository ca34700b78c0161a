# ============================================================================
# REPOSITORIES MODULE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Database access layer
# PURPOSE: PostgreSQL-backed resource store
# CREATED: 29 JAN 2026
# UPDATED: 17 OCT 2026 - Resource store replaces entity repositories
# ============================================================================
"""
Repositories Module

Provides database access for broker resources.
Uses psycopg3 async with connection pooling.

Usage:
    from repositories import get_pool, PostgresResourceStore

    pool = await get_pool()
    store = PostgresResourceStore(pool)
    await store.ensure_schema()
"""

from .database import get_pool, init_pool, close_pool
from .resource_repo import PostgresResourceStore

__all__ = [
    "get_pool",
    "init_pool",
    "close_pool",
    "PostgresResourceStore",
]
