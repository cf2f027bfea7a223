"""
PostgreSQL Manifest Store - asyncpg-backed implementation of ManifestStore.

Manifests live in a single ``manifests`` table keyed by (kind, namespace,
name). Write-backs use the resource version read at the start of a pass in
a ``SELECT ... FOR UPDATE`` check, so a concurrent user-side change makes
the engine's write fail with ConflictError instead of being overwritten.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional

from events import EventBus, EventType, ManifestEvent
from manifest import (
    LifecycleState,
    Manifest,
    Meta,
    ResourceRef,
    Status,
    spec_hash,
    unique_refs,
)
from migrate import run_migrations
from store import ConflictError, ManifestNotFound, ManifestStore

logger = logging.getLogger(__name__)


def _load_json(value: Any, default: Any) -> Any:
    """Decode a JSONB column (asyncpg returns text unless a codec is set)."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresManifestStore(ManifestStore):
    """Manages manifests in PostgreSQL."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        super().__init__(event_bus)
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
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Reads ====================

    async def get(self, ref: ResourceRef) -> Optional[Manifest]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM manifests
                WHERE kind = $1 AND namespace = $2 AND name = $3
                """,
                ref.kind,
                ref.namespace,
                ref.name,
            )
            if not row:
                return None

            return self._parse_manifest_row(row)

    async def get_state(self, ref: ResourceRef) -> Optional[LifecycleState]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            state = await conn.fetchval(
                """
                SELECT state FROM manifests
                WHERE kind = $1 AND namespace = $2 AND name = $3
                """,
                ref.kind,
                ref.namespace,
                ref.name,
            )
            return LifecycleState(state) if state is not None else None

    async def list_refs(self, kind: Optional[str] = None) -> List[ResourceRef]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            if kind is None:
                rows = await conn.fetch(
                    "SELECT kind, namespace, name FROM manifests "
                    "ORDER BY kind, namespace, name"
                )
            else:
                rows = await conn.fetch(
                    "SELECT kind, namespace, name FROM manifests WHERE kind = $1 "
                    "ORDER BY namespace, name",
                    kind,
                )
            return [
                ResourceRef(kind=row["kind"], namespace=row["namespace"], name=row["name"])
                for row in rows
            ]

    # ==================== User-side writes ====================

    async def put(
        self,
        ref: ResourceRef,
        spec: Dict[str, Any],
        annotations: Optional[Dict[str, str]] = None,
        dependencies: Optional[List[ResourceRef]] = None,
    ) -> Manifest:
        self._ensure_connected()
        new_hash = spec_hash(spec)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    """
                    SELECT id, spec_hash, generation, annotations, dependencies
                    FROM manifests
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    FOR UPDATE
                    """,
                    ref.kind,
                    ref.namespace,
                    ref.name,
                )

                if existing is None:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO manifests (
                            kind, namespace, name, spec, spec_hash, state,
                            status, annotations, finalizers, dependencies
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, '[]'::jsonb, $9)
                        RETURNING *
                        """,
                        ref.kind,
                        ref.namespace,
                        ref.name,
                        json.dumps(spec),
                        new_hash,
                        LifecycleState.PENDING.value,
                        json.dumps(Status().to_dict()),
                        json.dumps(dict(annotations or {})),
                        json.dumps([d.to_dict() for d in unique_refs(dependencies or [])]),
                    )
                    event_type = EventType.ADDED
                    logger.info(f"Created manifest {ref}")
                else:
                    generation = existing["generation"]
                    if existing["spec_hash"] != new_hash:
                        generation += 1
                        logger.info(f"Updated manifest {ref} to generation {generation}")

                    merged = _load_json(existing["annotations"], {})
                    merged.update(annotations or {})

                    if dependencies is not None:
                        deps_json = [d.to_dict() for d in unique_refs(dependencies)]
                    else:
                        deps_json = _load_json(existing["dependencies"], [])

                    row = await conn.fetchrow(
                        """
                        UPDATE manifests
                        SET spec = $1,
                            spec_hash = $2,
                            generation = $3,
                            annotations = $4,
                            dependencies = $5,
                            resource_version = resource_version + 1,
                            updated_at = NOW()
                        WHERE id = $6
                        RETURNING *
                        """,
                        json.dumps(spec),
                        new_hash,
                        generation,
                        json.dumps(merged),
                        json.dumps(deps_json),
                        existing["id"],
                    )
                    event_type = EventType.MODIFIED

        manifest = self._parse_manifest_row(row)
        await self._notify(ManifestEvent.from_manifest(event_type, manifest))
        return manifest

    async def request_deletion(self, ref: ResourceRef) -> bool:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    """
                    SELECT id, finalizers, generation FROM manifests
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    FOR UPDATE
                    """,
                    ref.kind,
                    ref.namespace,
                    ref.name,
                )
                if existing is None:
                    return False

                if not _load_json(existing["finalizers"], []):
                    # Nothing guards it: remove immediately
                    await conn.execute(
                        "DELETE FROM manifests WHERE id = $1", existing["id"]
                    )
                    row = None
                else:
                    row = await conn.fetchrow(
                        """
                        UPDATE manifests
                        SET deletion_requested = TRUE,
                            resource_version = resource_version + 1,
                            updated_at = NOW()
                        WHERE id = $1
                        RETURNING *
                        """,
                        existing["id"],
                    )

        logger.info(f"Deletion requested for manifest {ref}")
        if row is None:
            await self._notify(ManifestEvent.deleted(ref, existing["generation"]))
        else:
            await self._notify(
                ManifestEvent.from_manifest(
                    EventType.MODIFIED, self._parse_manifest_row(row)
                )
            )
        return True

    # ==================== Engine write-back ====================

    async def write_back(self, manifest: Manifest, expected_version: int) -> bool:
        self._ensure_connected()
        ref = manifest.ref
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    """
                    SELECT id, resource_version, deletion_requested
                    FROM manifests
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    FOR UPDATE
                    """,
                    ref.kind,
                    ref.namespace,
                    ref.name,
                )
                if current is None:
                    raise ManifestNotFound(ref)
                if current["resource_version"] != expected_version:
                    raise ConflictError(
                        ref, expected_version, current["resource_version"]
                    )

                if current["deletion_requested"] and not manifest.meta.finalizers:
                    await conn.execute(
                        "DELETE FROM manifests WHERE id = $1", current["id"]
                    )
                    collected = True
                else:
                    manifest.meta.resource_version = await conn.fetchval(
                        """
                        UPDATE manifests
                        SET state = $1,
                            status = $2,
                            annotations = $3,
                            finalizers = $4,
                            resource_version = resource_version + 1,
                            updated_at = NOW()
                        WHERE id = $5
                        RETURNING resource_version
                        """,
                        manifest.status.state.value,
                        json.dumps(manifest.status.to_dict()),
                        json.dumps(manifest.meta.annotations),
                        json.dumps(manifest.meta.finalizers),
                        current["id"],
                    )
                    collected = False

        if collected:
            logger.info(f"Garbage-collected manifest {ref}")
            await self._notify(ManifestEvent.deleted(ref, manifest.meta.generation))
            return False
        return True

    def _parse_manifest_row(self, row: asyncpg.Record) -> Manifest:
        """
        Build a Manifest from a ``manifests`` row, decoding JSONB columns.

        The ``state`` column is authoritative for the lifecycle state; the
        rest of the status comes from the ``status`` document.
        """
        result = dict(row)
        status = Status.from_dict(_load_json(result.get("status"), {}))
        status.state = LifecycleState(result["state"])

        return Manifest(
            ref=ResourceRef(
                kind=result["kind"],
                namespace=result["namespace"],
                name=result["name"],
            ),
            spec=_load_json(result.get("spec"), {}),
            status=status,
            meta=Meta(
                annotations=_load_json(result.get("annotations"), {}),
                deletion_requested=result.get("deletion_requested", False),
                finalizers=_load_json(result.get("finalizers"), []),
                generation=result.get("generation", 1),
                resource_version=result.get("resource_version", 1),
            ),
            dependencies=[
                ResourceRef.from_dict(dep)
                for dep in _load_json(result.get("dependencies"), [])
            ],
        )
