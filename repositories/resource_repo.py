# ============================================================================
# RESOURCE REPOSITORY
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Versioned resource store on PostgreSQL
# PURPOSE: ResourceStore implementation backed by brokerapp.resources
# CREATED: 17 OCT 2026
# ============================================================================
"""
Resource Repository

PostgreSQL implementation of the ResourceStore protocol.

Storage:
- One row per (resource_group, resource_type, resource_id)
- JSONB columns for labels, annotations, options, response, error
- `version` column for optimistic locking: every mutation runs
  `version = version + 1` and, when an expected version is supplied,
  `AND version = %s`; zero rows updated means Conflict
- Deletes are soft (deleted_at) so watches can observe them; every
  mutation stamps `change_seq` from a global sequence

Watch:
- Replays live rows as ADDED, then polls every `poll_interval` seconds
  until the timeout elapses
- Each poll re-reads the last `rescan_window` sequence numbers below the
  cursor, so a change whose sequence number was drawn before the cursor
  but committed after it is still delivered; rows are deduplicated on
  (resource_id, version)
- A change committed more than `rescan_window` sequence numbers late is
  seen at the next replay (callers refresh their watches periodically)
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from psycopg import sql
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool

from core.contracts import WatchEventType
from core.errors import Conflict, NotFound
from core.models import Resource, ResourceMetadata, ResourceStatus, WatchEvent, apply_patch
from infrastructure.base_repository import AsyncBaseRepository
from .database import SCHEMA, SCHEMA_IDENT, TABLE_RESOURCES, SEQ_RESOURCE_CHANGES

logger = logging.getLogger(__name__)

TABLE_NAMESPACES = sql.Identifier(SCHEMA, "resource_namespaces")
_NEXT_SEQ = sql.SQL("nextval({})").format(sql.Literal(f"{SCHEMA}.resource_change_seq"))

RESCAN_WINDOW = 1000

_KEY_WHERE = sql.SQL(
    "resource_group = %(resource_group)s AND resource_type = %(resource_type)s "
    "AND resource_id = %(resource_id)s"
)


class PostgresResourceStore(AsyncBaseRepository):
    """Repository for Resource documents."""

    def __init__(
        self,
        pool: AsyncConnectionPool,
        poll_interval: float = 1.0,
        rescan_window: int = RESCAN_WINDOW,
    ):
        super().__init__()
        self.pool = pool
        self.poll_interval = poll_interval
        self.rescan_window = rescan_window

    # =========================================================================
    # SCHEMA
    # =========================================================================

    async def ensure_schema(self) -> None:
        """Create schema, sequence, tables and indexes if missing."""
        statements = [
            sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(SCHEMA_IDENT),
            sql.SQL("CREATE SEQUENCE IF NOT EXISTS {}").format(SEQ_RESOURCE_CHANGES),
            sql.SQL("""
                CREATE TABLE IF NOT EXISTS {} (
                    resource_group VARCHAR(128) NOT NULL,
                    resource_type VARCHAR(64) NOT NULL,
                    registered_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (resource_group, resource_type)
                )
            """).format(TABLE_NAMESPACES),
            sql.SQL("""
                CREATE TABLE IF NOT EXISTS {} (
                    resource_group VARCHAR(128) NOT NULL,
                    resource_type VARCHAR(64) NOT NULL,
                    resource_id VARCHAR(128) NOT NULL,
                    labels JSONB NOT NULL DEFAULT '{{}}',
                    annotations JSONB NOT NULL DEFAULT '{{}}',
                    options JSONB NOT NULL DEFAULT '{{}}',
                    state VARCHAR(64),
                    last_operation JSONB,
                    response JSONB NOT NULL DEFAULT '{{}}',
                    error JSONB,
                    version BIGINT NOT NULL DEFAULT 1,
                    change_seq BIGINT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    deleted_at TIMESTAMPTZ,
                    PRIMARY KEY (resource_group, resource_type, resource_id)
                )
            """).format(TABLE_RESOURCES),
            sql.SQL(
                "CREATE INDEX IF NOT EXISTS resources_change_seq_idx "
                "ON {} (resource_group, resource_type, change_seq)"
            ).format(TABLE_RESOURCES),
            sql.SQL(
                "CREATE INDEX IF NOT EXISTS resources_labels_idx ON {} USING GIN (labels)"
            ).format(TABLE_RESOURCES),
        ]
        with self._error_context("schema creation", SCHEMA):
            async with self.pool.connection() as conn:
                for statement in statements:
                    await conn.execute(statement)
        logger.info(f"Resource store schema ready ({SCHEMA})")

    async def register(self, resource_group: str, resource_type: str) -> None:
        """Record the (group, type) namespace."""
        with self._error_context("namespace registration", f"{resource_group}/{resource_type}"):
            async with self.pool.connection() as conn:
                await conn.execute(
                    sql.SQL("""
                    INSERT INTO {} (resource_group, resource_type)
                    VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """).format(TABLE_NAMESPACES),
                    (resource_group, resource_type),
                )
        logger.debug(f"Registered namespace {resource_group}/{resource_type}")

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create(self, resource: Resource) -> Resource:
        """
        Create a resource.

        A soft-deleted row with the same key is revived; its version keeps
        advancing. A live row with the same key raises Conflict.
        """
        params = self._write_params(resource)
        with self._error_context("resource creation", resource.resource_id):
            async with self.pool.connection() as conn:
                conn.row_factory = dict_row
                try:
                    result = await conn.execute(
                        sql.SQL("""
                        INSERT INTO {table} AS r (
                            resource_group, resource_type, resource_id,
                            labels, annotations, options, state,
                            last_operation, response, error,
                            version, change_seq, created_at, updated_at
                        ) VALUES (
                            %(resource_group)s, %(resource_type)s, %(resource_id)s,
                            %(labels)s, %(annotations)s, %(options)s, %(state)s,
                            %(last_operation)s, %(response)s, %(error)s,
                            1, {next_seq}, now(), now()
                        )
                        ON CONFLICT (resource_group, resource_type, resource_id) DO UPDATE SET
                            labels = EXCLUDED.labels,
                            annotations = EXCLUDED.annotations,
                            options = EXCLUDED.options,
                            state = EXCLUDED.state,
                            last_operation = EXCLUDED.last_operation,
                            response = EXCLUDED.response,
                            error = EXCLUDED.error,
                            version = r.version + 1,
                            change_seq = EXCLUDED.change_seq,
                            created_at = now(),
                            updated_at = now(),
                            deleted_at = NULL
                        WHERE r.deleted_at IS NOT NULL
                        RETURNING *
                        """).format(table=TABLE_RESOURCES, next_seq=_NEXT_SEQ),
                        params,
                    )
                except UniqueViolation as e:
                    raise Conflict(
                        f"Resource {resource.resource_id} already exists",
                        resource_id=resource.resource_id,
                    ) from e
                row = await result.fetchone()

        if row is None:
            raise Conflict(f"Resource {resource.resource_id} already exists", resource_id=resource.resource_id)

        self._log_operation(True, "Created resource", resource.resource_id, {"type": resource.resource_type})
        return self._row_to_resource(row)

    async def get(self, resource_group: str, resource_type: str, resource_id: str) -> Resource:
        """
        Get a live resource.

        Raises:
            NotFound if absent or soft-deleted
        """
        with self._error_context("resource lookup", resource_id):
            async with self.pool.connection() as conn:
                conn.row_factory = dict_row
                result = await conn.execute(
                    sql.SQL("SELECT * FROM {} WHERE {} AND deleted_at IS NULL").format(
                        TABLE_RESOURCES, _KEY_WHERE
                    ),
                    self._key_params(resource_group, resource_type, resource_id),
                )
                row = await result.fetchone()

        if row is None:
            raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)
        return self._row_to_resource(row)

    async def update(self, resource: Resource, expected_version: Optional[int] = None) -> Resource:
        """
        Replace labels, annotations, options and status.

        Uses the version column for optimistic locking when
        expected_version is provided.
        """
        params = self._write_params(resource)
        params["expected_version"] = expected_version
        version_clause = sql.SQL("AND version = %(expected_version)s") if expected_version is not None else sql.SQL("")

        with self._error_context("resource update", resource.resource_id):
            async with self.pool.connection() as conn:
                conn.row_factory = dict_row
                result = await conn.execute(
                    sql.SQL("""
                    UPDATE {table} SET
                        labels = %(labels)s,
                        annotations = %(annotations)s,
                        options = %(options)s,
                        state = %(state)s,
                        last_operation = %(last_operation)s,
                        response = %(response)s,
                        error = %(error)s,
                        version = version + 1,
                        change_seq = {next_seq},
                        updated_at = now()
                    WHERE {key} AND deleted_at IS NULL {version_clause}
                    RETURNING *
                    """).format(
                        table=TABLE_RESOURCES,
                        next_seq=_NEXT_SEQ,
                        key=_KEY_WHERE,
                        version_clause=version_clause,
                    ),
                    params,
                )
                row = await result.fetchone()

        if row is None:
            await self._raise_missing_or_conflict(resource.resource_group, resource.resource_type,
                                                  resource.resource_id, expected_version)
        return self._row_to_resource(row)

    async def patch(
        self,
        resource_group: str,
        resource_type: str,
        resource_id: str,
        options: Optional[Dict[str, Any]] = None,
        status: Optional[Dict[str, Any]] = None,
        annotations: Optional[Dict[str, str]] = None,
        labels: Optional[Dict[str, str]] = None,
        expected_version: Optional[int] = None,
    ) -> Resource:
        """
        Merge a partial change into a resource.

        Read, merge and write happen in one transaction under
        SELECT ... FOR UPDATE, so concurrent patches serialize.
        """
        key = self._key_params(resource_group, resource_type, resource_id)
        with self._error_context("resource patch", resource_id):
            async with self.pool.connection() as conn:
                conn.row_factory = dict_row
                async with conn.transaction():
                    result = await conn.execute(
                        sql.SQL("SELECT * FROM {} WHERE {} AND deleted_at IS NULL FOR UPDATE").format(
                            TABLE_RESOURCES, _KEY_WHERE
                        ),
                        key,
                    )
                    row = await result.fetchone()
                    if row is None:
                        raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)

                    current = self._row_to_resource(row)
                    if expected_version is not None and current.resource_version != expected_version:
                        raise Conflict(
                            f"Resource {resource_id} version mismatch "
                            f"(expected {expected_version}, found {current.resource_version})",
                            resource_id=resource_id,
                        )

                    merged = apply_patch(current, options=options, status=status,
                                         annotations=annotations, labels=labels)
                    params = self._write_params(merged)
                    result = await conn.execute(
                        sql.SQL("""
                        UPDATE {table} SET
                            labels = %(labels)s,
                            annotations = %(annotations)s,
                            options = %(options)s,
                            state = %(state)s,
                            last_operation = %(last_operation)s,
                            response = %(response)s,
                            error = %(error)s,
                            version = version + 1,
                            change_seq = {next_seq},
                            updated_at = now()
                        WHERE {key} AND deleted_at IS NULL
                        RETURNING *
                        """).format(table=TABLE_RESOURCES, next_seq=_NEXT_SEQ, key=_KEY_WHERE),
                        params,
                    )
                    row = await result.fetchone()

        return self._row_to_resource(row)

    async def delete(self, resource_group: str, resource_type: str, resource_id: str) -> None:
        """Soft-delete a resource so watchers see a DELETED event."""
        with self._error_context("resource deletion", resource_id):
            async with self.pool.connection() as conn:
                result = await conn.execute(
                    sql.SQL("""
                    UPDATE {table} SET
                        deleted_at = now(),
                        version = version + 1,
                        change_seq = {next_seq},
                        updated_at = now()
                    WHERE {key} AND deleted_at IS NULL
                    """).format(table=TABLE_RESOURCES, next_seq=_NEXT_SEQ, key=_KEY_WHERE),
                    self._key_params(resource_group, resource_type, resource_id),
                )
                if result.rowcount == 0:
                    raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)

        self._log_operation(True, "Deleted resource", resource_id, {"type": resource_type})

    async def query(
        self,
        resource_group: str,
        resource_type: str,
        selector: Optional[Dict[str, str]] = None,
    ) -> List[Resource]:
        """List live resources whose labels contain every selector pair."""
        with self._error_context("resource query", f"{resource_group}/{resource_type}"):
            async with self.pool.connection() as conn:
                conn.row_factory = dict_row
                result = await conn.execute(
                    sql.SQL("""
                    SELECT * FROM {} WHERE resource_group = %s AND resource_type = %s
                      AND deleted_at IS NULL AND labels @> %s
                    ORDER BY resource_id
                    """).format(TABLE_RESOURCES),
                    (resource_group, resource_type, Json(selector or {})),
                )
                rows = await result.fetchall()
        return [self._row_to_resource(row) for row in rows]

    async def purge_deleted(self, older_than_seconds: float) -> int:
        """
        Physically remove tombstones older than the given age.

        Returns:
            Number of rows removed
        """
        with self._error_context("tombstone purge"):
            async with self.pool.connection() as conn:
                result = await conn.execute(
                    sql.SQL(
                        "DELETE FROM {} WHERE deleted_at IS NOT NULL "
                        "AND deleted_at < now() - make_interval(secs => %s)"
                    ).format(TABLE_RESOURCES),
                    (older_than_seconds,),
                )
                count = result.rowcount
        if count:
            logger.info(f"Purged {count} deleted resources")
        return count

    # =========================================================================
    # WATCH
    # =========================================================================

    async def watch(
        self,
        resource_group: str,
        resource_type: str,
        states: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[WatchEvent]:
        """Replay then poll changes for one (group, type)."""
        wanted = set(states) if states else None
        deadline = time.monotonic() + timeout if timeout is not None else None

        rows = await self._changes_since(resource_group, resource_type, None)
        cursor = 0
        # resource_id -> (version, change_seq) of the last row delivered or skipped
        seen: Dict[str, Tuple[int, int]] = {}
        for row in rows:
            cursor = max(cursor, row["change_seq"])
            seen[row["resource_id"]] = (row["version"], row["change_seq"])
            if row["deleted_at"] is None and (wanted is None or row["state"] in wanted):
                yield WatchEvent(type=WatchEventType.ADDED, resource=self._row_to_resource(row))

        while True:
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return
                await asyncio.sleep(min(self.poll_interval, remaining))
            else:
                await asyncio.sleep(self.poll_interval)

            floor = max(cursor - self.rescan_window, 0)
            for row in await self._changes_since(resource_group, resource_type, floor):
                cursor = max(cursor, row["change_seq"])
                last = seen.get(row["resource_id"])
                if last is not None and last[0] >= row["version"]:
                    continue
                seen[row["resource_id"]] = (row["version"], row["change_seq"])
                if wanted is not None and row["state"] not in wanted:
                    continue
                if row["deleted_at"] is not None:
                    event_type = WatchEventType.DELETED
                elif row["created_at"] == row["updated_at"]:
                    event_type = WatchEventType.ADDED
                else:
                    event_type = WatchEventType.MODIFIED
                yield WatchEvent(type=event_type, resource=self._row_to_resource(row))

            floor = cursor - self.rescan_window
            seen = {key: value for key, value in seen.items() if value[1] > floor}

    async def _changes_since(
        self,
        resource_group: str,
        resource_type: str,
        cursor: Optional[int],
    ) -> List[Dict[str, Any]]:
        if cursor is None:
            query = sql.SQL("""
                SELECT * FROM {} WHERE resource_group = %s AND resource_type = %s
                ORDER BY change_seq
            """).format(TABLE_RESOURCES)
            params = (resource_group, resource_type)
        else:
            query = sql.SQL("""
                SELECT * FROM {} WHERE resource_group = %s AND resource_type = %s
                  AND change_seq > %s
                ORDER BY change_seq
            """).format(TABLE_RESOURCES)
            params = (resource_group, resource_type, cursor)

        with self._error_context("watch poll", f"{resource_group}/{resource_type}"):
            async with self.pool.connection() as conn:
                conn.row_factory = dict_row
                result = await conn.execute(query, params)
                return await result.fetchall()

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _raise_missing_or_conflict(
        self,
        resource_group: str,
        resource_type: str,
        resource_id: str,
        expected_version: Optional[int],
    ) -> None:
        # get() raises NotFound when the row is gone
        current = await self.get(resource_group, resource_type, resource_id)
        logger.warning(
            f"Version conflict for resource {resource_id} "
            f"(expected version {expected_version}, found {current.resource_version})"
        )
        raise Conflict(
            f"Resource {resource_id} version mismatch "
            f"(expected {expected_version}, found {current.resource_version})",
            resource_id=resource_id,
        )

    @staticmethod
    def _key_params(resource_group: str, resource_type: str, resource_id: str) -> Dict[str, Any]:
        return {
            "resource_group": resource_group,
            "resource_type": resource_type,
            "resource_id": resource_id,
        }

    @staticmethod
    def _write_params(resource: Resource) -> Dict[str, Any]:
        return {
            "resource_group": resource.resource_group,
            "resource_type": resource.resource_type,
            "resource_id": resource.resource_id,
            "labels": Json(resource.metadata.labels),
            "annotations": Json(resource.metadata.annotations),
            "options": Json(resource.options),
            "state": resource.status.state,
            "last_operation": Json(resource.status.last_operation) if resource.status.last_operation is not None else None,
            "response": Json(resource.status.response),
            "error": Json(resource.status.error) if resource.status.error is not None else None,
        }

    @staticmethod
    def _row_to_resource(row: Dict[str, Any]) -> Resource:
        """Convert a database row to a Resource."""
        return Resource(
            resource_group=row["resource_group"],
            resource_type=row["resource_type"],
            metadata=ResourceMetadata(
                name=row["resource_id"],
                labels=row.get("labels") or {},
                annotations=row.get("annotations") or {},
                resource_version=row["version"],
                created_at=row.get("created_at"),
                updated_at=row.get("updated_at"),
            ),
            options=row.get("options") or {},
            status=ResourceStatus(
                state=row.get("state"),
                last_operation=row.get("last_operation"),
                response=row.get("response") or {},
                error=row.get("error"),
            ),
        )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["PostgresResourceStore"]
