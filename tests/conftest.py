"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import EngineConfig
from engine import ReconcileEngine
from events import EventBus
from managers.base import (
    ApplyResponse,
    ApplyResult,
    DeleteResponse,
    DeleteResult,
    DiffStrategy,
    ResourceManager,
    VerifyResponse,
    VerifyResult,
)
from managers.registry import ManagerRegistry
from manifest import LifecycleState, ResourceRef
from store import InMemoryManifestStore


class FakeManager(ResourceManager):
    """
    Scriptable resource manager.

    Responses are plain attributes so tests can change them between passes.
    ``errors[op]`` is raised instead of answering; ``delays[op]`` sleeps
    before answering.
    """

    def __init__(self, kind: str = "Widget"):
        self._kind = kind
        self.schema: Optional[Dict[str, Any]] = None
        self.strategy = DiffStrategy.TOKEN
        self.create_response = ApplyResponse(
            result=ApplyResult.AWAITING_VERIFICATION, token={"id": "ext-1"}
        )
        self.update_response = ApplyResponse(
            result=ApplyResult.AWAITING_VERIFICATION, token={"id": "ext-1"}
        )
        self.verify_response = VerifyResponse(
            result=VerifyResult.READY, token={"id": "ext-1"}
        )
        self.delete_response = DeleteResponse(result=DeleteResult.SUCCEEDED)
        self.errors: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[tuple] = []
        self.config: Optional[Dict[str, Any]] = None
        self.closed = False

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def spec_schema(self) -> Optional[Dict[str, Any]]:
        return self.schema

    @property
    def diff_strategy(self) -> DiffStrategy:
        return self.strategy

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def _answer(self, op: str, response):
        if op in self.delays:
            await asyncio.sleep(self.delays[op])
        if op in self.errors:
            raise self.errors[op]
        return response

    async def create(self, spec):
        self.calls.append(("create", spec))
        return await self._answer("create", self.create_response)

    async def update(self, spec):
        self.calls.append(("update", spec))
        return await self._answer("update", self.update_response)

    async def verify(self, spec, token):
        self.calls.append(("verify", spec, token))
        return await self._answer("verify", self.verify_response)

    async def delete(self, spec):
        self.calls.append(("delete", spec))
        return await self._answer("delete", self.delete_response)

    async def close(self) -> None:
        self.closed = True

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def engine_config():
    """Engine config with drift checks off and deterministic backoff."""
    return EngineConfig(
        drift_check_interval=0,
        operation_timeout=1,
        backoff_jitter_factor=0,
    )


@pytest.fixture
def manager():
    return FakeManager()


@pytest.fixture
def registry(manager):
    registry = ManagerRegistry()
    registry.register_instance(manager)
    registry.freeze()
    return registry


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store():
    return InMemoryManifestStore()


@pytest.fixture
def engine(store, registry, engine_config):
    return ReconcileEngine(store=store, registry=registry, config=engine_config)


@pytest.fixture
def ref():
    return ResourceRef(kind="Widget", namespace="default", name="w1")


@pytest.fixture
def seed(store, engine_config):
    """
    Put a manifest and force its engine-owned fields.

    Returns an async function(ref, spec=None, state=None, annotations=None,
    dependencies=None, finalizer=True, token=None, observed_generation=None).
    """

    async def _seed(
        ref: ResourceRef,
        spec: Optional[Dict[str, Any]] = None,
        state: Optional[LifecycleState] = None,
        annotations: Optional[Dict[str, str]] = None,
        dependencies: Optional[List[ResourceRef]] = None,
        finalizer: bool = True,
        token: Any = None,
        observed_generation: Optional[int] = None,
    ):
        manifest = await store.put(
            ref,
            spec if spec is not None else {"size": 1},
            annotations=annotations,
            dependencies=dependencies,
        )
        if state is None and not finalizer and token is None:
            return manifest

        expected = manifest.meta.resource_version
        if state is not None:
            manifest.status.state = state
            if state in (LifecycleState.SUCCEEDED, LifecycleState.FAILED):
                manifest.status.observed_generation = manifest.meta.generation
        if observed_generation is not None:
            manifest.status.observed_generation = observed_generation
        if finalizer:
            manifest.meta.finalizers.append(engine_config.finalizer)
        manifest.status.opaque_token = token
        await store.write_back(manifest, expected_version=expected)
        return await store.get(ref)

    return _seed
