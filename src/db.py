"""
Database Manager - PostgreSQL-backed resource store.

Stores Infrastructure objects, the Cluster context of each namespace and
events. Every write to an Infrastructure is a compare-and-swap against its
resource version.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from errors import (
    AlreadyExistsError,
    ConflictError,
    DeletionPendingError,
    NotFoundError,
)
from events import Event
from migrate import run_migrations
from models import (
    OPERATION_ANNOTATION,
    Cluster,
    Infrastructure,
    InfrastructureStatus,
)

logger = logging.getLogger(__name__)

KIND_INFRASTRUCTURE = "Infrastructure"
KIND_CLUSTER = "Cluster"


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Infrastructure Methods ====================

    async def create_infrastructure(
        self,
        namespace: str,
        name: str,
        spec: Optional[Dict[str, Any]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> Infrastructure:
        """
        Create a new Infrastructure object.

        Raises:
            AlreadyExistsError: If an object with this key exists
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO infrastructures (namespace, name, spec, annotations)
                    VALUES ($1, $2, $3, $4)
                    RETURNING *
                    """,
                    namespace,
                    name,
                    json.dumps(spec or {}),
                    json.dumps(annotations or {}),
                )
            except asyncpg.UniqueViolationError as e:
                raise AlreadyExistsError(
                    KIND_INFRASTRUCTURE, f"{namespace}/{name}"
                ) from e

        logger.info(f"Created infrastructure {namespace}/{name}")
        return self._parse_infrastructure_row(row)

    async def get_infrastructure(self, namespace: str, name: str) -> Infrastructure:
        """
        Get an Infrastructure object by key.

        Raises:
            NotFoundError: If the object does not exist
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM infrastructures WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
        if not row:
            raise NotFoundError(KIND_INFRASTRUCTURE, f"{namespace}/{name}")
        return self._parse_infrastructure_row(row)

    async def list_infrastructures(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[Infrastructure]:
        """List Infrastructure objects, optionally limited to one namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM infrastructures WHERE namespace = $1
                    ORDER BY namespace, name LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM infrastructures ORDER BY namespace, name LIMIT $1",
                    limit,
                )
        return [self._parse_infrastructure_row(row) for row in rows]

    async def get_infrastructures_needing_reconciliation(
        self, limit: int = 10, resync_period: float = 300.0
    ) -> List[Infrastructure]:
        """
        Get Infrastructure objects that need a reconciliation pass.

        Objects being deleted, with a spec change not yet observed, with a
        pending operation annotation, without a succeeded last operation, or
        not touched for ``resync_period`` seconds. Namespaces whose cluster
        is marked failed are left out.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT i.*
                FROM infrastructures i
                WHERE (
                    i.deletion_timestamp IS NOT NULL
                    OR i.generation > COALESCE(
                        (i.status->>'observed_generation')::bigint, 0
                    )
                    OR i.annotations ? $3
                    OR COALESCE(i.status->'last_operation'->>'state', '')
                        <> 'Succeeded'
                    OR i.updated_at <= NOW() - make_interval(secs => $2)
                )
                AND NOT EXISTS (
                    SELECT 1 FROM clusters c
                    WHERE c.namespace = i.namespace
                      AND c.shoot->'status'->'last_operation'->>'state' = 'Failed'
                )
                ORDER BY (i.deletion_timestamp IS NULL), i.updated_at ASC
                LIMIT $1
                """,
                limit,
                float(resync_period),
                OPERATION_ANNOTATION,
            )
        return [self._parse_infrastructure_row(row) for row in rows]

    async def update_infrastructure(self, infra: Infrastructure) -> Infrastructure:
        """
        Write annotations and finalizers of ``infra``.

        The write only succeeds if the stored resource version still equals
        ``infra.resource_version``. An object with a deletion timestamp and no
        finalizers left is removed from the store.

        Raises:
            ConflictError: If the object was modified concurrently
            NotFoundError: If the object does not exist
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE infrastructures
                    SET annotations = $3,
                        finalizers = $4,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2 AND resource_version = $5
                    RETURNING *
                    """,
                    infra.namespace,
                    infra.name,
                    json.dumps(infra.annotations),
                    json.dumps(infra.finalizers),
                    infra.resource_version,
                )
                if row is None:
                    await self._raise_write_failure(conn, infra)

                updated = self._parse_infrastructure_row(row)
                if updated.deletion_timestamp is not None and not updated.finalizers:
                    await conn.execute(
                        """
                        DELETE FROM infrastructures
                        WHERE namespace = $1 AND name = $2
                        """,
                        infra.namespace,
                        infra.name,
                    )
                    logger.info(f"Removed infrastructure {infra.key} from the store")

        return updated

    async def update_infrastructure_status(
        self, infra: Infrastructure
    ) -> Infrastructure:
        """
        Write the status of ``infra`` (compare-and-swap).

        Raises:
            ConflictError: If the object was modified concurrently
            NotFoundError: If the object does not exist
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE infrastructures
                SET status = $3,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2 AND resource_version = $4
                RETURNING *
                """,
                infra.namespace,
                infra.name,
                json.dumps(infra.status.to_dict()),
                infra.resource_version,
            )
            if row is None:
                await self._raise_write_failure(conn, infra)

        return self._parse_infrastructure_row(row)

    async def update_infrastructure_spec(
        self, namespace: str, name: str, spec: Dict[str, Any]
    ) -> Infrastructure:
        """
        Replace the spec, bumping the generation if it changed.

        Raises:
            DeletionPendingError: If deletion of the object was requested
            NotFoundError: If the object does not exist
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE infrastructures
                SET generation = CASE
                        WHEN spec = $3::jsonb THEN generation
                        ELSE generation + 1
                    END,
                    spec = $3::jsonb,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                  AND deletion_timestamp IS NULL
                RETURNING *
                """,
                namespace,
                name,
                json.dumps(spec),
            )
            if row is None:
                deleting = await conn.fetchval(
                    """
                    SELECT deletion_timestamp IS NOT NULL FROM infrastructures
                    WHERE namespace = $1 AND name = $2
                    """,
                    namespace,
                    name,
                )
                if deleting is None:
                    raise NotFoundError(KIND_INFRASTRUCTURE, f"{namespace}/{name}")
                raise DeletionPendingError(KIND_INFRASTRUCTURE, f"{namespace}/{name}")

        updated = self._parse_infrastructure_row(row)
        logger.info(
            f"Updated infrastructure {namespace}/{name} "
            f"(generation {updated.generation})"
        )
        return updated

    async def set_annotation(
        self, namespace: str, name: str, key: str, value: str
    ) -> Infrastructure:
        """Set a single annotation on an Infrastructure object."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE infrastructures
                SET annotations = annotations || jsonb_build_object($3::text, $4::text),
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                RETURNING *
                """,
                namespace,
                name,
                key,
                value,
            )
        if row is None:
            raise NotFoundError(KIND_INFRASTRUCTURE, f"{namespace}/{name}")
        return self._parse_infrastructure_row(row)

    async def request_deletion(self, namespace: str, name: str) -> bool:
        """
        Mark an Infrastructure object for deletion.

        Returns:
            True if the object had no finalizers and was removed right away,
            False if it now waits for its finalizers to be cleared
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                finalizers = await conn.fetchval(
                    """
                    UPDATE infrastructures
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING finalizers
                    """,
                    namespace,
                    name,
                )
                if finalizers is None:
                    raise NotFoundError(KIND_INFRASTRUCTURE, f"{namespace}/{name}")

                if _load_json(finalizers, []):
                    logger.info(
                        f"Marked infrastructure {namespace}/{name} for deletion"
                    )
                    return False

                await conn.execute(
                    "DELETE FROM infrastructures WHERE namespace = $1 AND name = $2",
                    namespace,
                    name,
                )
        logger.info(f"Deleted infrastructure {namespace}/{name}")
        return True

    async def _raise_write_failure(
        self, conn: asyncpg.Connection, infra: Infrastructure
    ) -> None:
        """Raise NotFoundError or ConflictError for a failed CAS write."""
        current = await conn.fetchval(
            """
            SELECT resource_version FROM infrastructures
            WHERE namespace = $1 AND name = $2
            """,
            infra.namespace,
            infra.name,
        )
        if current is None:
            raise NotFoundError(KIND_INFRASTRUCTURE, infra.key)
        raise ConflictError(KIND_INFRASTRUCTURE, infra.key, infra.resource_version)

    def _parse_infrastructure_row(self, row: asyncpg.Record) -> Infrastructure:
        """Convert an ``infrastructures`` row into an Infrastructure object."""
        result = dict(row)
        return Infrastructure(
            namespace=result["namespace"],
            name=result["name"],
            spec=_load_json(result.get("spec"), {}),
            generation=result.get("generation", 1),
            resource_version=result.get("resource_version", 0),
            annotations=_load_json(result.get("annotations"), {}),
            finalizers=_load_json(result.get("finalizers"), []),
            deletion_timestamp=result.get("deletion_timestamp"),
            status=InfrastructureStatus.from_dict(
                _load_json(result.get("status"), {})
            ),
            created_at=result.get("created_at"),
        )

    # ==================== Cluster Methods ====================

    async def get_cluster(self, namespace: str) -> Cluster:
        """
        Get the Cluster context of a namespace.

        Raises:
            NotFoundError: If no cluster is registered for the namespace
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM clusters WHERE namespace = $1",
                namespace,
            )
        if not row:
            raise NotFoundError(KIND_CLUSTER, namespace)

        result = dict(row)
        return Cluster(
            namespace=result["namespace"],
            shoot=_load_json(result.get("shoot"), {}),
            seed=_load_json(result.get("seed"), {}),
            cloud_profile=_load_json(result.get("cloud_profile"), {}),
        )

    async def put_cluster(self, cluster: Cluster) -> None:
        """Create or replace the Cluster context of a namespace."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO clusters (namespace, shoot, seed, cloud_profile)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (namespace) DO UPDATE
                SET shoot = EXCLUDED.shoot,
                    seed = EXCLUDED.seed,
                    cloud_profile = EXCLUDED.cloud_profile,
                    updated_at = NOW()
                """,
                cluster.namespace,
                json.dumps(cluster.shoot),
                json.dumps(cluster.seed),
                json.dumps(cluster.cloud_profile),
            )
        logger.info(f"Stored cluster for namespace {cluster.namespace}")

    # ==================== Event Methods ====================

    async def record_event(self, event: Event) -> None:
        """Persist an event."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO events (namespace, name, kind, type, reason, message)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                event.namespace,
                event.name,
                event.kind,
                event.event_type.value,
                event.reason,
                event.message,
            )

    async def list_events(
        self,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """List the most recent events, optionally for one object."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM events WHERE 1=1"
            params: List[Any] = []
            param_count = 0

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if name:
                param_count += 1
                query += f" AND name = ${param_count}"
                params.append(name)

            param_count += 1
            query += f" ORDER BY created_at DESC, id DESC LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
        return [dict(row) for row in rows]
