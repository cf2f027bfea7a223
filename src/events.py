"""
Event Streaming - In-memory pub/sub for manifest events.

Carries change notifications from the manifest store to the dispatcher and
reconcile results from the engine to watchers. Provides Server-Sent Events
(SSE) formatting for the HTTP event stream.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from manifest import Manifest, ResourceRef, utc_now

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of manifest events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"


# Events that represent a user-side change and should trigger a reconcile
CHANGE_EVENTS = frozenset({EventType.ADDED, EventType.MODIFIED, EventType.DELETED})


@dataclass
class ManifestEvent:
    """Event emitted when a manifest changes or is reconciled."""

    event_type: EventType
    ref: ResourceRef
    state: Optional[str]
    generation: int
    reason: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "kind": self.ref.kind,
            "namespace": self.ref.namespace,
            "name": self.ref.name,
            "state": self.state,
            "generation": self.generation,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        json_data = json.dumps(self.to_dict())
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def from_manifest(
        cls,
        event_type: EventType,
        manifest: Manifest,
    ) -> "ManifestEvent":
        """
        Create an event from a manifest.

        Args:
            event_type: The type of event.
            manifest: The manifest the event is about.

        Returns:
            A new ManifestEvent instance.
        """
        return cls(
            event_type=event_type,
            ref=manifest.ref,
            state=manifest.status.state.value,
            generation=manifest.meta.generation,
            reason=manifest.status.reason,
            timestamp=utc_now(),
        )

    @classmethod
    def deleted(cls, ref: ResourceRef, generation: int = 0) -> "ManifestEvent":
        """Create a DELETED event for a manifest that no longer exists."""
        return cls(
            event_type=EventType.DELETED,
            ref=ref,
            state=None,
            generation=generation,
            reason="",
            timestamp=utc_now(),
        )


class EventSubscription:
    """Async iterator over one subscriber's queue; ``None`` ends it."""

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ManifestEvent"], bool]] = None,
    ):
        self._queue = queue
        self._accept = filter_fn

    def __aiter__(self) -> AsyncIterator["ManifestEvent"]:
        return self

    async def __anext__(self) -> "ManifestEvent":
        while True:
            item = await self._queue.get()
            if item is None:
                raise StopAsyncIteration
            if self._accept is None or self._accept(item):
                return item


class EventBus:
    """
    Fan-out of manifest events to bounded per-subscriber queues.

    Publishing never blocks. When a subscriber's queue is full the event is
    dropped for that subscriber only; the dispatcher's periodic resync picks
    up whatever a dropped change event would have triggered.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._queues: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ManifestEvent) -> None:
        async with self._lock:
            targets = list(self._queues.items())

        for subscriber_id, queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Subscriber {subscriber_id} is lagging, dropped {event.event_type.value} "
                    f"for {event.ref}"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ManifestEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Register a new subscriber.

        Args:
            filter_fn: Predicate deciding which events the subscription yields.

        Returns:
            The subscriber id (for :meth:`unsubscribe`) and its subscription.
        """
        subscriber_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._queues[subscriber_id] = queue

        logger.debug(f"Event subscriber {subscriber_id} added")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Drop a subscriber and end its iterator with a sentinel."""
        async with self._lock:
            queue = self._queues.pop(subscriber_id, None)

        if queue is None:
            return
        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            # Drain one slot so the sentinel always lands
            queue.get_nowait()
            queue.put_nowait(None)
        logger.debug(f"Event subscriber {subscriber_id} removed")

    def subscriber_count(self) -> int:
        return len(self._queues)
