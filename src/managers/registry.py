"""
Manager Registry - Discovery and registration of resource managers.

Resource managers are registered by kind at process start, initialized once,
then the registry is frozen and treated as read-only for the lifetime of the
process.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from managers.base import ResourceManager
from validation import validate_schema

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "crudop.managers"


class UnknownKindError(LookupError):
    """Raised when no resource manager is registered for a kind."""

    def __init__(self, kind: str, available: List[str]):
        self.kind = kind
        super().__init__(
            f"No resource manager registered for kind '{kind}'. "
            f"Available kinds: {', '.join(available) or 'none'}"
        )


class ManagerRegistry:
    """
    Kind-keyed table of resource managers.

    Lifecycle: register() classes, initialize_all() to build instances,
    freeze(). After freezing, only lookups are allowed.
    """

    def __init__(self):
        # Registered manager classes (not instantiated)
        self._classes: Dict[str, Type[ResourceManager]] = {}
        # Cached metadata (kind, version) to avoid repeated instantiation
        self._info: Dict[str, Dict[str, str]] = {}
        # Initialized instances
        self._instances: Dict[str, ResourceManager] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise RuntimeError("Manager registry is frozen; register managers at startup")

    def register(self, manager_class: Type[ResourceManager]) -> None:
        """
        Register a resource manager class.

        Args:
            manager_class: The ResourceManager subclass to register

        Raises:
            ValueError: If another class already handles the same kind
            RuntimeError: If the registry is frozen
        """
        self._ensure_mutable()

        # Temporary instance to read kind/version (only once at registration)
        temp_instance = manager_class()
        kind = temp_instance.kind
        version = temp_instance.version

        existing = self._classes.get(kind)
        if existing is not None and existing is not manager_class:
            raise ValueError(
                f"Kind '{kind}' is already handled by {existing.__name__}. "
                f"Cannot register {manager_class.__name__}."
            )

        self._classes[kind] = manager_class
        self._info[kind] = {"kind": kind, "version": version}
        logger.info(f"Registered resource manager: {kind} v{version}")

    def register_instance(self, manager: ResourceManager) -> None:
        """
        Register an already-initialized manager instance.

        Useful for embedding, where the consumer constructs managers itself.
        """
        self._ensure_mutable()
        kind = manager.kind
        if kind in self._classes and not isinstance(manager, self._classes[kind]):
            raise ValueError(f"Kind '{kind}' is already handled by another manager")
        self._classes[kind] = type(manager)
        self._info[kind] = {"kind": kind, "version": manager.version}
        self._instances[kind] = manager
        logger.info(f"Registered resource manager instance: {kind} v{manager.version}")

    async def initialize_all(
        self, configs: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> None:
        """
        Instantiate and initialize every registered manager.

        Configuration for each kind is the manager's own environment config
        overlaid with ``configs[kind]``.

        Raises:
            ValueError: If a manager publishes an invalid spec schema
        """
        self._ensure_mutable()
        configs = configs or {}

        for kind, manager_class in self._classes.items():
            if kind in self._instances:
                continue

            config = manager_class.load_config_from_env()
            config.update(configs.get(kind, {}))

            manager = manager_class()
            await manager.initialize(config)

            schema = manager.spec_schema
            if schema is not None:
                is_valid, error = validate_schema(schema)
                if not is_valid:
                    raise ValueError(f"Manager for kind '{kind}': {error}")

            self._instances[kind] = manager
            logger.info(f"Initialized resource manager: {kind}")

    def restrict(self, kinds: List[str]) -> None:
        """
        Keep only the listed kinds; unknown names are logged and ignored.

        An empty list keeps every registered kind.
        """
        self._ensure_mutable()
        if not kinds:
            return

        for kind in kinds:
            if kind not in self._classes:
                logger.warning(f"Enabled manager kind '{kind}' is not registered")

        for kind in list(self._classes):
            if kind not in kinds:
                del self._classes[kind]
                self._info.pop(kind, None)
                self._instances.pop(kind, None)
                logger.info(f"Resource manager '{kind}' disabled by configuration")

    def freeze(self) -> None:
        """Make the registry read-only."""
        self._frozen = True
        logger.info(f"Manager registry frozen with kinds: {', '.join(self.kinds())}")

    def get(self, kind: str) -> ResourceManager:
        """
        Get the initialized manager for a kind.

        Raises:
            UnknownKindError: If no initialized manager handles the kind
        """
        manager = self._instances.get(kind)
        if manager is None:
            raise UnknownKindError(kind, self.kinds())
        return manager

    def has_kind(self, kind: str) -> bool:
        return kind in self._instances

    def kinds(self) -> List[str]:
        """List all registered kinds."""
        return list(self._classes.keys())

    def get_info(self, kind: str) -> Optional[Dict[str, str]]:
        """Return {'kind', 'version'} for a registered kind, or None."""
        return self._info.get(kind)

    async def close_all(self) -> None:
        """Close every initialized manager."""
        for kind, manager in self._instances.items():
            try:
                await manager.close()
            except Exception as e:
                logger.error(f"Error closing resource manager '{kind}': {e}")


# Global registry instance
_registry: Optional[ManagerRegistry] = None


def get_registry() -> ManagerRegistry:
    """Get the global manager registry singleton."""
    global _registry
    if _registry is None:
        _registry = ManagerRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def discover(registry: ManagerRegistry) -> None:
    """
    Register resource managers installed as entry points.

    A manager that fails to load is skipped with a warning so that one
    broken package cannot keep the others from starting.
    """
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            manager_class = ep.load()
            registry.register(manager_class)
        except Exception as e:
            logger.warning(f"Could not load resource manager {ep.name}: {e}")


def register_builtin_managers(registry: Optional[ManagerRegistry] = None) -> None:
    """
    Register the built-in managers and discover installed ones.

    Called during application startup before the registry is frozen.
    """
    registry = registry or get_registry()

    from managers.rest import RestResourceManager

    registry.register(RestResourceManager)

    discover(registry)
