"""Unit tests for store.py - In-memory manifest store."""

import asyncio

import pytest

from events import EventBus, EventType
from manifest import LifecycleState, ResourceRef
from store import ConflictError, InMemoryManifestStore, ManifestNotFound

FINALIZER = "crudop.io/finalizer"


@pytest.mark.asyncio
class TestPut:
    """Tests for user-side writes."""

    async def test_create(self, store, ref):
        manifest = await store.put(ref, {"size": 1}, annotations={"a": "b"})

        assert manifest.status.state == LifecycleState.PENDING
        assert manifest.meta.generation == 1
        assert manifest.meta.resource_version == 1
        assert manifest.meta.annotations == {"a": "b"}
        assert manifest.meta.finalizers == []

    async def test_spec_change_bumps_generation(self, store, ref):
        await store.put(ref, {"size": 1})
        manifest = await store.put(ref, {"size": 2})

        assert manifest.meta.generation == 2
        assert manifest.meta.resource_version == 2
        assert manifest.spec == {"size": 2}

    async def test_same_spec_keeps_generation(self, store, ref):
        await store.put(ref, {"size": 1})
        manifest = await store.put(ref, {"size": 1}, annotations={"x": "y"})

        assert manifest.meta.generation == 1
        assert manifest.meta.resource_version == 2
        assert manifest.meta.annotations == {"x": "y"}

    async def test_annotations_merge(self, store, ref):
        await store.put(ref, {}, annotations={"a": "1"})
        manifest = await store.put(ref, {}, annotations={"b": "2"})
        assert manifest.meta.annotations == {"a": "1", "b": "2"}

    async def test_dependencies_replace_when_given(self, store, ref):
        first = ResourceRef("Network", "default", "a")
        second = ResourceRef("Network", "default", "b")
        await store.put(ref, {}, dependencies=[first])

        kept = await store.put(ref, {})
        assert kept.dependencies == [first]

        replaced = await store.put(ref, {}, dependencies=[second, second])
        assert replaced.dependencies == [second]

    async def test_returned_copy_is_detached(self, store, ref):
        manifest = await store.put(ref, {"size": 1})
        manifest.spec["size"] = 99

        stored = await store.get(ref)
        assert stored.spec == {"size": 1}


@pytest.mark.asyncio
class TestReads:
    """Tests for get, get_state and list_refs."""

    async def test_get_missing(self, store, ref):
        assert await store.get(ref) is None
        assert await store.get_state(ref) is None

    async def test_list_refs_by_kind(self, store):
        a = ResourceRef("Widget", "default", "a")
        b = ResourceRef("Gadget", "default", "b")
        await store.put(a, {})
        await store.put(b, {})

        assert set(await store.list_refs()) == {a, b}
        assert await store.list_refs(kind="Gadget") == [b]


@pytest.mark.asyncio
class TestDeletion:
    """Tests for request_deletion."""

    async def test_missing(self, store, ref):
        assert await store.request_deletion(ref) is False

    async def test_no_finalizers_removes_immediately(self, store, ref):
        await store.put(ref, {})
        assert await store.request_deletion(ref) is True
        assert await store.get(ref) is None

    async def test_finalizer_defers_removal(self, store, ref, seed):
        await seed(ref, state=LifecycleState.SUCCEEDED)
        before = await store.get(ref)

        assert await store.request_deletion(ref) is True

        manifest = await store.get(ref)
        assert manifest.meta.deletion_requested is True
        assert manifest.meta.resource_version == before.meta.resource_version + 1


@pytest.mark.asyncio
class TestWriteBack:
    """Tests for the engine write-back."""

    async def test_persists_engine_fields(self, store, ref):
        manifest = await store.put(ref, {"size": 1})
        manifest.status.state = LifecycleState.VERIFYING
        manifest.status.opaque_token = {"id": 1}
        manifest.meta.finalizers.append(FINALIZER)
        manifest.meta.annotations["note"] = "x"
        manifest.spec = {"ignored": True}

        assert await store.write_back(manifest, expected_version=1) is True

        stored = await store.get(ref)
        assert stored.status.state == LifecycleState.VERIFYING
        assert stored.status.opaque_token == {"id": 1}
        assert stored.meta.finalizers == [FINALIZER]
        assert stored.meta.annotations == {"note": "x"}
        assert stored.spec == {"size": 1}
        assert stored.meta.resource_version == 2
        assert manifest.meta.resource_version == 2

    async def test_stale_version_conflicts(self, store, ref):
        manifest = await store.put(ref, {"size": 1})
        await store.put(ref, {"size": 2})

        with pytest.raises(ConflictError) as exc_info:
            await store.write_back(manifest, expected_version=1)

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2

    async def test_missing_raises(self, store, ref):
        manifest = await store.put(ref, {})
        await store.request_deletion(ref)

        with pytest.raises(ManifestNotFound):
            await store.write_back(manifest, expected_version=1)

    async def test_last_finalizer_removed_collects(self, store, ref, seed):
        await seed(ref, state=LifecycleState.SUCCEEDED)
        await store.request_deletion(ref)
        manifest = await store.get(ref)
        manifest.meta.finalizers.clear()

        result = await store.write_back(
            manifest, expected_version=manifest.meta.resource_version
        )

        assert result is False
        assert await store.get(ref) is None


@pytest.mark.asyncio
class TestChangeEvents:
    """Tests for change notifications."""

    async def test_user_writes_publish_and_write_back_does_not(self, ref):
        bus = EventBus()
        store = InMemoryManifestStore(event_bus=bus)
        _, subscription = await bus.subscribe()

        manifest = await store.put(ref, {"size": 1})
        manifest.status.state = LifecycleState.CREATING
        await store.write_back(manifest, expected_version=1)
        await store.put(ref, {"size": 2})
        await store.request_deletion(ref)

        received = []
        for _ in range(3):
            received.append(
                await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
            )

        assert [e.event_type for e in received] == [
            EventType.ADDED,
            EventType.MODIFIED,
            EventType.DELETED,
        ]
        assert received[1].generation == 2
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(subscription.__anext__(), timeout=0.05)

    async def test_garbage_collection_publishes_deleted(self, ref):
        bus = EventBus()
        store = InMemoryManifestStore(event_bus=bus)
        manifest = await store.put(ref, {})
        manifest.meta.finalizers.append(FINALIZER)
        await store.write_back(manifest, expected_version=1)
        await store.request_deletion(ref)
        _, subscription = await bus.subscribe()

        manifest = await store.get(ref)
        manifest.meta.finalizers.clear()
        await store.write_back(manifest, expected_version=manifest.meta.resource_version)

        event = await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
        assert event.event_type == EventType.DELETED
        assert event.ref == ref
