"""
Main entry point for the crudop reconcile engine.

Wires the manifest store, resource manager registry, reconcile engine,
dispatcher and notification API together and runs them until signalled.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from api import NotificationAPI
from config import Config, get_config
from db import PostgresManifestStore
from dispatcher import Dispatcher
from engine import ReconcileEngine
from events import EventBus
from managers.registry import ManagerRegistry, get_registry, register_builtin_managers
from store import InMemoryManifestStore, ManifestStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_store(config: Config, event_bus: EventBus) -> ManifestStore:
    """Create the manifest store selected by STORE_BACKEND."""
    store_config = config.store
    if store_config.backend == "postgres":
        return PostgresManifestStore(
            host=store_config.host,
            port=store_config.port,
            database=store_config.database,
            user=store_config.user,
            password=store_config.password,
            min_pool_size=store_config.min_pool_size,
            max_pool_size=store_config.max_pool_size,
            event_bus=event_bus,
        )
    logger.warning("Using the in-memory manifest store; state is lost on exit")
    return InMemoryManifestStore(event_bus=event_bus)


class Application:
    """Main application that orchestrates the engine, dispatcher and API."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.registry: Optional[ManagerRegistry] = None
        self.store: Optional[ManifestStore] = None
        self.event_bus: Optional[EventBus] = None
        self.engine: Optional[ReconcileEngine] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.api: Optional[NotificationAPI] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing crudop")
        logging.getLogger().setLevel(self.config.api.log_level.upper())

        # Managers are registered and configured once, then frozen
        self.registry = get_registry()
        register_builtin_managers(self.registry)
        self.registry.restrict(self.config.managers.enabled_managers)
        await self.registry.initialize_all(self.config.managers.manager_configs)
        self.registry.freeze()

        self.event_bus = EventBus()

        self.store = build_store(self.config, self.event_bus)
        if isinstance(self.store, PostgresManifestStore):
            await self.store.connect()
            await self.store.initialize_schema()
            logger.info("Database initialized")

        self.engine = ReconcileEngine(
            store=self.store,
            registry=self.registry,
            config=self.config.engine,
            event_bus=self.event_bus,
        )
        self.dispatcher = Dispatcher(
            engine=self.engine,
            store=self.store,
            config=self.config.dispatcher,
            event_bus=self.event_bus,
        )

        if self.config.api.enabled:
            self.api = NotificationAPI(
                dispatcher=self.dispatcher,
                store=self.store,
                event_bus=self.event_bus,
                config=self.config.api,
                registry=self.registry,
            )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.dispatcher:
            await self.initialize()

        self.running = True
        logger.info("Starting crudop")

        tasks: List[asyncio.Task] = [asyncio.create_task(self.dispatcher.start())]
        if self.api:
            tasks.append(asyncio.create_task(self.api.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping crudop")
        self.running = False

        if self.api:
            await self.api.stop()

        if self.dispatcher:
            await self.dispatcher.stop()

        if self.registry:
            await self.registry.close_all()

        if isinstance(self.store, PostgresManifestStore):
            await self.store.close()

        logger.info("crudop stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
