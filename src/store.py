"""
Manifest Store - Interface to the declarative object store.

The store exclusively owns manifests. The engine reads a manifest at the
start of a pass and writes status and metadata back atomically at the end,
guarded by the resource version it read. User-side changes (put, deletion
requests) are published as change notifications; engine write-backs are not,
so status writes never retrigger reconciliation on their own.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from events import EventBus, EventType, ManifestEvent
from manifest import LifecycleState, Manifest, Meta, ResourceRef, Status, unique_refs

logger = logging.getLogger(__name__)


class ManifestNotFound(Exception):
    """Raised when a manifest does not exist (or no longer exists)."""

    def __init__(self, ref: ResourceRef):
        self.ref = ref
        super().__init__(f"Manifest {ref} not found")


class ConflictError(Exception):
    """Raised when a write-back races with another writer."""

    def __init__(self, ref: ResourceRef, expected: int, actual: int):
        self.ref = ref
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Manifest {ref} changed during reconcile "
            f"(expected version {expected}, found {actual})"
        )


class ManifestStore(ABC):
    """Abstract manifest store used by the engine and the dependency resolver."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._event_bus = event_bus

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Attach an event bus for change notifications."""
        self._event_bus = event_bus

    async def _notify(self, event: ManifestEvent) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event)

    @abstractmethod
    async def get(self, ref: ResourceRef) -> Optional[Manifest]:
        """Return a copy of the manifest, or None if it does not exist."""
        pass

    @abstractmethod
    async def get_state(self, ref: ResourceRef) -> Optional[LifecycleState]:
        """Return only the lifecycle state of a manifest, or None if absent."""
        pass

    @abstractmethod
    async def list_refs(self, kind: Optional[str] = None) -> List[ResourceRef]:
        """List identities of all stored manifests, optionally by kind."""
        pass

    @abstractmethod
    async def put(
        self,
        ref: ResourceRef,
        spec: Dict[str, Any],
        annotations: Optional[Dict[str, str]] = None,
        dependencies: Optional[List[ResourceRef]] = None,
    ) -> Manifest:
        """
        Declare desired state for a resource (create or update).

        A changed spec increments the generation. Annotations are merged
        into the existing ones; dependencies replace the existing list when
        given.
        """
        pass

    @abstractmethod
    async def request_deletion(self, ref: ResourceRef) -> bool:
        """
        Mark a manifest for deletion.

        Returns:
            True if the manifest existed, False otherwise.
        """
        pass

    @abstractmethod
    async def write_back(self, manifest: Manifest, expected_version: int) -> bool:
        """
        Atomically persist status, annotations and finalizers.

        Args:
            manifest: The engine's working copy
            expected_version: Resource version read at the start of the pass

        Returns:
            True if the manifest still exists, False if it was garbage
            collected because deletion was requested and no finalizers remain.

        Raises:
            ManifestNotFound: If the manifest disappeared mid-pass
            ConflictError: If the manifest changed since it was read
        """
        pass


class InMemoryManifestStore(ManifestStore):
    """Manifest store kept in process memory, for embedding and tests."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        super().__init__(event_bus)
        self._manifests: Dict[ResourceRef, Manifest] = {}
        self._lock = asyncio.Lock()

    async def get(self, ref: ResourceRef) -> Optional[Manifest]:
        async with self._lock:
            manifest = self._manifests.get(ref)
            return manifest.working_copy() if manifest else None

    async def get_state(self, ref: ResourceRef) -> Optional[LifecycleState]:
        async with self._lock:
            manifest = self._manifests.get(ref)
            return manifest.status.state if manifest else None

    async def list_refs(self, kind: Optional[str] = None) -> List[ResourceRef]:
        async with self._lock:
            return [ref for ref in self._manifests if kind is None or ref.kind == kind]

    async def put(
        self,
        ref: ResourceRef,
        spec: Dict[str, Any],
        annotations: Optional[Dict[str, str]] = None,
        dependencies: Optional[List[ResourceRef]] = None,
    ) -> Manifest:
        async with self._lock:
            existing = self._manifests.get(ref)
            if existing is None:
                manifest = Manifest(
                    ref=ref,
                    spec=copy.deepcopy(spec),
                    status=Status(),
                    meta=Meta(annotations=dict(annotations or {})),
                    dependencies=list(dependencies or []),
                )
                self._manifests[ref] = manifest
                event_type = EventType.ADDED
                logger.info(f"Created manifest {ref}")
            else:
                manifest = existing
                if manifest.spec != spec:
                    manifest.spec = copy.deepcopy(spec)
                    manifest.meta.generation += 1
                    logger.info(
                        f"Updated manifest {ref} to generation "
                        f"{manifest.meta.generation}"
                    )
                if annotations:
                    manifest.meta.annotations.update(annotations)
                if dependencies is not None:
                    manifest.dependencies = unique_refs(dependencies)
                manifest.meta.resource_version += 1
                event_type = EventType.MODIFIED
            snapshot = manifest.working_copy()

        await self._notify(ManifestEvent.from_manifest(event_type, snapshot))
        return snapshot

    async def request_deletion(self, ref: ResourceRef) -> bool:
        async with self._lock:
            manifest = self._manifests.get(ref)
            if manifest is None:
                return False
            if not manifest.meta.finalizers:
                # Nothing guards it: remove immediately
                del self._manifests[ref]
                gone = True
            else:
                manifest.meta.deletion_requested = True
                manifest.meta.resource_version += 1
                gone = False
            snapshot = manifest.working_copy()

        logger.info(f"Deletion requested for manifest {ref}")
        if gone:
            await self._notify(ManifestEvent.deleted(ref, snapshot.meta.generation))
        else:
            await self._notify(ManifestEvent.from_manifest(EventType.MODIFIED, snapshot))
        return True

    async def write_back(self, manifest: Manifest, expected_version: int) -> bool:
        ref = manifest.ref
        async with self._lock:
            current = self._manifests.get(ref)
            if current is None:
                raise ManifestNotFound(ref)
            if current.meta.resource_version != expected_version:
                raise ConflictError(
                    ref, expected_version, current.meta.resource_version
                )

            current.status = copy.deepcopy(manifest.status)
            current.meta.annotations = dict(manifest.meta.annotations)
            current.meta.finalizers = list(manifest.meta.finalizers)
            current.meta.resource_version += 1
            manifest.meta.resource_version = current.meta.resource_version

            if current.meta.deletion_requested and not current.meta.finalizers:
                del self._manifests[ref]
                collected = True
            else:
                collected = False

        if collected:
            logger.info(f"Garbage-collected manifest {ref}")
            await self._notify(ManifestEvent.deleted(ref, manifest.meta.generation))
            return False
        return True
