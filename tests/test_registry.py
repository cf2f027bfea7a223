"""Unit tests for managers/registry.py - Resource manager registry."""

import pytest
from unittest.mock import MagicMock, patch

from conftest import FakeManager
from managers.registry import (
    ManagerRegistry,
    UnknownKindError,
    discover,
    get_registry,
    register_builtin_managers,
    reset_registry,
)
from managers.rest import RestResourceManager


class GadgetManager(FakeManager):
    def __init__(self):
        super().__init__(kind="Gadget")


class OtherWidgetManager(FakeManager):
    pass


class BadSchemaManager(FakeManager):
    def __init__(self):
        super().__init__(kind="Broken")
        self.schema = {"type": "not-a-type"}


class FailingCloseManager(FakeManager):
    async def close(self):
        raise RuntimeError("connection already closed")


class TestRegistration:
    """Tests for registering managers."""

    def test_register_class(self):
        registry = ManagerRegistry()
        registry.register(GadgetManager)

        assert registry.kinds() == ["Gadget"]
        assert registry.get_info("Gadget") == {"kind": "Gadget", "version": "1.0.0"}
        # Registered but not initialized yet
        assert not registry.has_kind("Gadget")

    def test_register_same_class_twice_is_allowed(self):
        registry = ManagerRegistry()
        registry.register(GadgetManager)
        registry.register(GadgetManager)
        assert registry.kinds() == ["Gadget"]

    def test_conflicting_kind_raises(self):
        registry = ManagerRegistry()
        registry.register(FakeManager)
        with pytest.raises(ValueError, match="already handled by FakeManager"):
            registry.register(OtherWidgetManager)

    def test_register_instance(self):
        registry = ManagerRegistry()
        manager = FakeManager()
        registry.register_instance(manager)

        assert registry.get("Widget") is manager

    def test_frozen_rejects_registration(self):
        registry = ManagerRegistry()
        registry.freeze()

        assert registry.frozen
        with pytest.raises(RuntimeError, match="frozen"):
            registry.register(GadgetManager)
        with pytest.raises(RuntimeError):
            registry.register_instance(FakeManager())

    def test_get_unknown_kind(self):
        registry = ManagerRegistry()
        registry.register_instance(FakeManager())

        with pytest.raises(UnknownKindError) as exc_info:
            registry.get("Gadget")

        assert exc_info.value.kind == "Gadget"
        assert "Available kinds: Widget" in str(exc_info.value)


class TestRestrict:
    """Tests for restricting to enabled kinds."""

    def test_keeps_only_listed_kinds(self):
        registry = ManagerRegistry()
        registry.register(GadgetManager)
        registry.register_instance(FakeManager())

        registry.restrict(["Gadget", "Missing"])

        assert registry.kinds() == ["Gadget"]
        assert not registry.has_kind("Widget")

    def test_empty_list_keeps_everything(self):
        registry = ManagerRegistry()
        registry.register(GadgetManager)
        registry.register_instance(FakeManager())

        registry.restrict([])

        assert sorted(registry.kinds()) == ["Gadget", "Widget"]


@pytest.mark.asyncio
class TestLifecycle:
    """Tests for initialize_all and close_all."""

    async def test_initialize_all_merges_config(self):
        registry = ManagerRegistry()
        registry.register(GadgetManager)

        await registry.initialize_all({"Gadget": {"endpoint": "http://x"}})

        manager = registry.get("Gadget")
        assert isinstance(manager, GadgetManager)
        assert manager.config == {"endpoint": "http://x"}

    async def test_initialize_all_keeps_registered_instances(self):
        registry = ManagerRegistry()
        manager = FakeManager()
        registry.register_instance(manager)

        await registry.initialize_all()

        assert registry.get("Widget") is manager
        assert manager.config is None

    async def test_invalid_schema_rejected(self):
        registry = ManagerRegistry()
        registry.register(BadSchemaManager)

        with pytest.raises(ValueError, match="Broken"):
            await registry.initialize_all()

    async def test_close_all_continues_after_error(self):
        registry = ManagerRegistry()
        failing = FailingCloseManager()
        gadget = GadgetManager()
        registry.register_instance(failing)
        registry.register_instance(gadget)

        await registry.close_all()

        assert gadget.closed


class TestDiscovery:
    """Tests for entry point discovery and the global registry."""

    def teardown_method(self):
        reset_registry()

    def test_discover_registers_and_skips_broken(self):
        good = MagicMock()
        good.name = "gadget"
        good.load.return_value = GadgetManager
        broken = MagicMock()
        broken.name = "broken"
        broken.load.side_effect = ImportError("no module named gadgets")

        registry = ManagerRegistry()
        with patch("managers.registry.entry_points", return_value=[broken, good]) as mock_eps:
            discover(registry)

        mock_eps.assert_called_once_with(group="crudop.managers")
        assert registry.kinds() == ["Gadget"]

    def test_register_builtin_managers(self):
        registry = ManagerRegistry()
        with patch("managers.registry.entry_points", return_value=[]):
            register_builtin_managers(registry)

        assert registry.kinds() == ["RestResource"]

    def test_get_registry_singleton(self):
        assert get_registry() is get_registry()
        first = get_registry()
        reset_registry()
        assert get_registry() is not first

    def test_rest_manager_registers_by_class(self):
        registry = ManagerRegistry()
        registry.register(RestResourceManager)
        assert registry.get_info("RestResource")["version"] == "1.0.0"
