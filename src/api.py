"""
Notification API - HTTP intake for change notifications and status reads.

Upstream processes that change manifests in the declarative store POST the
identity here so it is reconciled without waiting for the next resync. The
API also serves the engine-owned status of a manifest and an SSE stream of
manifest events.
"""

import asyncio
import logging
import re
from typing import Any, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from config import APIConfig
from dispatcher import Dispatcher
from events import EventBus, ManifestEvent
from managers.registry import ManagerRegistry
from manifest import ResourceRef
from store import ManifestStore

logger = logging.getLogger(__name__)

# Validation constants
# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
# Kinds are CamelCase identifiers, optionally dotted (e.g. "Bucket.storage")
KIND_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]*(\.[A-Za-z0-9]+)*$")


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


class Notification(BaseModel):
    """Request model for a change notification."""

    kind: str = Field(..., description="Resource kind", examples=["RestResource"])
    namespace: str = Field(..., description="Namespace", examples=["default"])
    name: str = Field(..., description="Resource name", examples=["my-bucket"])

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if not KIND_PATTERN.match(v):
            raise ValueError("kind must be an alphanumeric identifier")
        return v

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        return validate_name_format(v, "namespace")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, namespace=self.namespace, name=self.name)


class NotificationAccepted(BaseModel):
    """Response model for an accepted notification."""

    status: str = "queued"
    key: str


class StatusResponse(BaseModel):
    """Response model for a manifest's engine-owned status."""

    kind: str
    namespace: str
    name: str
    state: str
    reason: str = ""
    opaque_token: Any = None
    observed_generation: int = 0
    generation: int = 1
    last_transition_time: Optional[str] = None
    last_verified_time: Optional[str] = None
    deletion_requested: bool = False
    finalizers: List[str] = []


class ManagerInfo(BaseModel):
    """Response model for a registered resource manager."""

    kind: str
    version: str


class NotificationAPI:
    """FastAPI application fronting the dispatcher and the manifest store."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        store: ManifestStore,
        event_bus: Optional[EventBus] = None,
        config: Optional[APIConfig] = None,
        registry: Optional[ManagerRegistry] = None,
    ):
        self.dispatcher = dispatcher
        self.store = store
        self.config = config or APIConfig()
        self.registry = registry
        self.server: Optional[uvicorn.Server] = None
        self._event_bus = event_bus

        self.app = FastAPI(
            title="crudop",
            description="Reconcile engine for externally managed CRUD resources",
            version="0.1.0",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        """
        Set up the FastAPI routes.

        - Health: GET /healthz
        - Notification intake: POST /api/v1/notify
        - Status: GET /api/v1/manifests/{kind}/{namespace}/{name}/status
        - Managers: GET /api/v1/managers
        - Event stream: GET /api/v1/events
        """

        @self.app.get("/healthz")
        async def health_check():
            """Health check endpoint with queue depth."""
            queue = self.dispatcher.queue
            return {
                "status": "ok",
                "queue_depth": len(queue),
                "processing": queue.processing_count(),
            }

        @self.app.post(
            "/api/v1/notify", response_model=NotificationAccepted, status_code=202
        )
        async def notify(notification: Notification):
            """Enqueue a resource identity for reconciliation."""
            if self.dispatcher.queue.shutting_down:
                raise HTTPException(status_code=503, detail="Dispatcher is stopping")
            ref = notification.ref()
            self.dispatcher.enqueue(ref)
            logger.info(f"Notification received for {ref}")
            return NotificationAccepted(key=ref.key)

        @self.app.get(
            "/api/v1/manifests/{kind}/{namespace}/{name}/status",
            response_model=StatusResponse,
        )
        async def get_status(kind: str, namespace: str, name: str):
            """Return the engine-owned status of a manifest."""
            ref = ResourceRef(kind=kind, namespace=namespace, name=name)
            try:
                manifest = await self.store.get(ref)
            except Exception as e:
                logger.error(f"Error reading manifest {ref}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if manifest is None:
                raise HTTPException(status_code=404, detail=f"Manifest {ref} not found")

            status = manifest.status
            return StatusResponse(
                kind=kind,
                namespace=namespace,
                name=name,
                state=status.state.value,
                reason=status.reason,
                opaque_token=status.opaque_token,
                observed_generation=status.observed_generation,
                generation=manifest.meta.generation,
                last_transition_time=status.last_transition_time,
                last_verified_time=status.last_verified_time,
                deletion_requested=manifest.meta.deletion_requested,
                finalizers=list(manifest.meta.finalizers),
            )

        @self.app.get("/api/v1/managers", response_model=List[ManagerInfo])
        async def list_managers():
            """List registered resource managers."""
            if self.registry is None:
                return []
            return [
                ManagerInfo(**self.registry.get_info(kind))
                for kind in self.registry.kinds()
            ]

        @self.app.get("/api/v1/events")
        async def stream_events(kind: Optional[str] = None):
            """SSE stream of manifest events.

            Optionally filter by kind.
            """
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            if kind:
                wanted = kind

                def filter_fn(event: ManifestEvent) -> bool:
                    return event.ref.kind == wanted

            else:
                filter_fn = None

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Serve the API until stop() is called."""
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting notification API on {self.config.host}:{self.config.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping notification API")
        if self.server:
            self.server.should_exit = True
