"""
Deduplicating keyed work queue.

A key is queued at most once. A key added while a worker is processing it is
held back and queued again when the worker calls done(), so a single key is
never handed to two workers at the same time.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by get() once the queue has been shut down."""


class WorkQueue:
    """Work queue keyed by resource identity."""

    def __init__(self):
        # None is the shutdown sentinel
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        # Keys waiting to be processed (queued, or re-added while processing)
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._shutting_down = False

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Picked up again by done()
            return
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        """
        Queue a key after a delay.

        Only the earliest pending timer per key is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= deadline:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(deadline, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> str:
        """
        Wait for the next key and mark it as processing.

        Raises:
            QueueShutDown: Once shutdown() has been called
        """
        if self._shutting_down:
            raise QueueShutDown()
        key = await self._queue.get()
        if key is None or self._shutting_down:
            # Pass the sentinel on so every waiting getter wakes up
            self._queue.put_nowait(None)
            raise QueueShutDown()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        """Mark a key as processed; requeue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shutdown(self) -> None:
        """Stop handing out keys and wake all waiting getters."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)
        logger.debug("Work queue shut down")

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def processing_count(self) -> int:
        return len(self._processing)

    def pending_timers(self) -> int:
        return len(self._timers)

    def __len__(self) -> int:
        return len(self._dirty)
