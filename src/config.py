"""
Configuration module for the crudop reconcile engine.

Loads configuration from environment variables.
Supports per-kind resource manager configuration.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("memory", "postgres")


@dataclass
class StoreConfig:
    """Manifest store configuration (in-memory or PostgreSQL)."""

    backend: str = "memory"
    host: str = "localhost"
    port: int = 5432
    database: str = "crudop"
    user: str = "crudop"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("STORE_BACKEND", "memory").lower()
        if backend not in STORE_BACKENDS:
            raise ValueError(
                f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, "
                f"got '{backend}'"
            )

        password = os.getenv("DB_PASSWORD", "")
        if backend == "postgres" and not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            backend=backend,
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "crudop"),
            user=os.getenv("DB_USER", "crudop"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class EngineConfig:
    """Reconcile engine configuration."""

    annotation_prefix: str = "crudop.io"
    operation_timeout: float = 30  # seconds per Resource Manager call
    dependency_wait: float = 10  # fixed requeue while dependencies are not ready
    drift_check_interval: float = 300  # 0 disables re-verification of Succeeded

    # Exponential backoff configuration
    backoff_base_delay: float = 1  # base delay in seconds
    backoff_max_delay: float = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @property
    def finalizer(self) -> str:
        return f"{self.annotation_prefix}/finalizer"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            annotation_prefix=os.getenv("ANNOTATION_PREFIX", "crudop.io"),
            operation_timeout=float(os.getenv("OPERATION_TIMEOUT", "30")),
            dependency_wait=float(os.getenv("DEPENDENCY_WAIT", "10")),
            drift_check_interval=float(os.getenv("DRIFT_CHECK_INTERVAL", "300")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class DispatcherConfig:
    """Work dispatcher configuration."""

    workers: int = 5
    resync_interval: float = 600  # seconds between full re-enqueues

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        workers = int(os.getenv("WORKERS", "5"))
        if workers < 1:
            raise ValueError("WORKERS must be at least 1")
        return cls(
            workers=workers,
            resync_interval=float(os.getenv("RESYNC_INTERVAL", "600")),
        )


@dataclass
class APIConfig:
    """Notification API server configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled=os.getenv("API_ENABLED", "true").lower() == "true",
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class ManagerConfig:
    """Resource manager configuration."""

    # Kinds to serve (empty = every registered manager)
    enabled_managers: List[str] = field(default_factory=list)

    # Manager-specific configurations keyed by kind
    manager_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_str = os.getenv("ENABLED_MANAGERS", "")
        enabled = [k.strip() for k in enabled_str.split(",") if k.strip()]

        # Load manager configs from JSON environment variable
        manager_configs = {}
        if os.getenv("MANAGER_CONFIGS"):
            try:
                manager_configs = json.loads(os.getenv("MANAGER_CONFIGS"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid MANAGER_CONFIGS: {e}")
            if not isinstance(manager_configs, dict):
                logger.warning("Ignoring MANAGER_CONFIGS: expected a JSON object")
                manager_configs = {}

        return cls(enabled_managers=enabled, manager_configs=manager_configs)

    def get_manager_config(self, kind: str) -> Dict[str, Any]:
        """Get configuration for a specific kind."""
        return self.manager_configs.get(kind, {})


@dataclass
class Config:
    """Main configuration object."""

    store: StoreConfig
    engine: EngineConfig
    dispatcher: DispatcherConfig
    api: APIConfig
    managers: ManagerConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            store=StoreConfig.from_env(),
            engine=EngineConfig.from_env(),
            dispatcher=DispatcherConfig.from_env(),
            api=APIConfig.from_env(),
            managers=ManagerConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            store=StoreConfig(),
            engine=EngineConfig(),
            dispatcher=DispatcherConfig(),
            api=APIConfig(),
            managers=ManagerConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
