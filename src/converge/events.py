"""
Engine events - action transitions and drift findings as a pub/sub stream.

The executor and the drift reconciler publish EngineEvents on an EventBus.
Each event gets a bus-wide sequence number; the bus keeps a short history so
that an SSE client reconnecting with ``Last-Event-ID`` misses nothing that is
still buffered.
"""

import asyncio
import itertools
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

EventFilter = Callable[["EngineEvent"], bool]


class EventType(Enum):
    """Types of engine events."""

    ACTION_STARTED = "ACTION_STARTED"
    ACTION_SUCCEEDED = "ACTION_SUCCEEDED"
    ACTION_FAILED = "ACTION_FAILED"
    ACTION_SKIPPED = "ACTION_SKIPPED"
    DRIFT_DETECTED = "DRIFT_DETECTED"
    INSTANCE_DELETED = "INSTANCE_DELETED"


def _encode(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Cannot encode {type(obj).__name__} in an event")


@dataclass
class EngineEvent:
    """Event emitted by the executor or the drift reconciler."""

    event_type: EventType
    instance: str
    action: Optional[str] = None
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    # Assigned by EventBus.publish
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "instance": self.instance,
            "action": self.action,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """Render as one Server-Sent Events message (``event``, ``id``, ``data``)."""
        payload = json.dumps(self.to_dict(), default=_encode)
        return f"event: {self.event_type.value}\nid: {self.sequence}\ndata: {payload}\n\n"


class EventSubscription:
    """
    Async iterator over one subscriber's queue.

    Events rejected by ``filter_fn`` are dropped. A ``None`` in the queue ends
    the iteration.
    """

    def __init__(self, queue: asyncio.Queue, filter_fn: Optional[EventFilter] = None):
        self.queue = queue
        self.filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[EngineEvent]:
        return self

    async def __anext__(self) -> EngineEvent:
        event = await self.queue.get()
        while event is not None:
            if self.filter_fn is None or self.filter_fn(event):
                return event
            event = await self.queue.get()
        raise StopAsyncIteration


class EventBus:
    """
    In-process fan-out of engine events.

    Every subscriber owns a bounded queue. Publishing never blocks: when a
    subscriber's queue is full the event is dropped for that subscriber only,
    so a slow SSE client cannot hold up an apply.

    Args:
        queue_size: Capacity of each subscriber queue
        history_size: Number of recent events kept for replay
    """

    def __init__(self, queue_size: int = 256, history_size: int = 100):
        self._queue_size = queue_size
        self._queues: Dict[str, asyncio.Queue] = {}
        self._history: Deque[EngineEvent] = deque(maxlen=history_size)
        self._sequence = itertools.count(1)

    async def publish(self, event: EngineEvent) -> None:
        event.sequence = next(self._sequence)
        self._history.append(event)
        for subscriber_id, queue in list(self._queues.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Subscriber {subscriber_id} is not keeping up; dropped event {event.sequence}"
                )

    async def subscribe(
        self, filter_fn: Optional[EventFilter] = None, since: Optional[int] = None
    ) -> Tuple[str, EventSubscription]:
        """
        Register a subscriber.

        Args:
            filter_fn: Optional predicate applied to each event
            since: Replay buffered events with a sequence number above this one

        Returns:
            ``(subscriber_id, subscription)``
        """
        subscriber_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        if since is not None:
            backlog = [e for e in self._history if e.sequence > since]
            # Keep the newest events when the backlog exceeds the queue
            for event in backlog[-self._queue_size :]:
                queue.put_nowait(event)
        self._queues[subscriber_id] = queue
        logger.debug(f"Event subscriber {subscriber_id} added ({len(self._queues)} active)")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Drop a subscriber and end its iteration. Unknown ids are ignored."""
        queue = self._queues.pop(subscriber_id, None)
        if queue is None:
            return
        self._terminate(queue)
        logger.debug(f"Event subscriber {subscriber_id} removed")

    async def close(self) -> None:
        """End every subscription, e.g. on shutdown."""
        queues, self._queues = self._queues, {}
        for queue in queues.values():
            self._terminate(queue)

    def _terminate(self, queue: asyncio.Queue) -> None:
        if queue.full():
            # Make room for the end marker; the subscriber is going away anyway
            queue.get_nowait()
        queue.put_nowait(None)

    def subscriber_count(self) -> int:
        return len(self._queues)
