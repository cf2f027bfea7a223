"""
Work Dispatcher - Runs reconcile passes for many identities concurrently.

A fixed pool of worker tasks consumes a deduplicating work queue keyed by
resource identity. The queue's processing set serializes passes per
identity; the pool size bounds cross-identity parallelism. Identities are
enqueued by change notifications (event bus or the HTTP intake), by a
periodic resync of the whole store, and by the engine's own requeue
directives.
"""

import asyncio
import logging
from typing import List, Optional

from config import DispatcherConfig
from engine import ReconcileEngine, ReconcileOutcome
from events import CHANGE_EVENTS, EventBus, ManifestEvent
from manifest import ResourceRef
from store import ManifestStore
from workqueue import QueueShutDown, WorkQueue

logger = logging.getLogger(__name__)


class Dispatcher:
    """Worker pool feeding resource identities to the reconcile engine."""

    def __init__(
        self,
        engine: ReconcileEngine,
        store: ManifestStore,
        config: Optional[DispatcherConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.engine = engine
        self.store = store
        self.config = config or DispatcherConfig()
        self.queue = WorkQueue()
        self.running = False
        self._event_bus = event_bus
        self._subscriber_id: Optional[str] = None
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def enqueue(self, ref: ResourceRef) -> None:
        """Request a reconcile pass for an identity (coalesced if queued)."""
        logger.debug(f"Enqueue {ref}")
        self.queue.add(ref.key)

    async def start(self):
        """Start workers, the resync loop and the change watch; run until stopped."""
        logger.info(f"Starting dispatcher with {self.config.workers} workers")
        self.running = True
        self._shutdown_event.clear()

        self._tasks = [
            asyncio.create_task(self._worker(i)) for i in range(self.config.workers)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))

        if self._event_bus is not None:
            self._subscriber_id, subscription = await self._event_bus.subscribe(
                filter_fn=lambda event: event.event_type in CHANGE_EVENTS
            )
            self._tasks.append(asyncio.create_task(self._watch_loop(subscription)))

        try:
            await asyncio.gather(*self._tasks)
        except Exception as e:
            logger.error(f"Dispatcher error: {e}")
            raise

    async def stop(self):
        """Stop taking work and wait for in-flight passes to finish."""
        logger.info("Stopping dispatcher")
        self.running = False
        self._shutdown_event.set()
        self.queue.shutdown()

        if self._event_bus is not None and self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _worker(self, worker_id: int) -> None:
        """Take identities off the queue until it shuts down."""
        while True:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                logger.debug(f"Worker {worker_id} exiting")
                return

            try:
                await self._process(key)
            finally:
                self.queue.done(key)

    async def _process(self, key: str) -> None:
        """Run one pass and apply its requeue directive."""
        try:
            ref = ResourceRef.parse(key)
        except ValueError as e:
            logger.error(f"Dropping work item: {e}")
            return

        try:
            outcome = await self.engine.reconcile(ref)
        except Exception as e:
            delay = self.engine.backoff.next_delay(key)
            logger.error(
                f"Error reconciling {ref}: {e}; retrying in {delay:.1f}s",
                exc_info=True,
            )
            self.queue.add_after(key, delay)
            return

        self._apply_outcome(key, outcome)

    def _apply_outcome(self, key: str, outcome: ReconcileOutcome) -> None:
        if outcome.error:
            logger.warning(f"{key}: {outcome.error}")
        if not outcome.requeue:
            return
        if outcome.requeue_after > 0:
            self.queue.add_after(key, outcome.requeue_after)
        else:
            self.queue.add(key)

    async def resync(self) -> int:
        """Enqueue every identity in the store."""
        refs = await self.store.list_refs()
        for ref in refs:
            self.queue.add(ref.key)
        logger.debug(f"Resync enqueued {len(refs)} manifests")
        return len(refs)

    async def _resync_loop(self):
        """Periodically enqueue everything, starting immediately."""
        while self.running:
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.config.resync_interval
                )
            except asyncio.TimeoutError:
                pass

    async def _watch_loop(self, subscription):
        """Enqueue identities named by change notifications."""
        async for event in subscription:
            self._on_event(event)

    def _on_event(self, event: ManifestEvent) -> None:
        if event.event_type not in CHANGE_EVENTS:
            return
        logger.debug(f"{event.event_type.value} {event.ref}")
        self.enqueue(event.ref)
