"""Event bus for observers (UI, logs, tests).

Publishing never blocks the engine: each subscriber gets a bounded queue and
the oldest event is dropped when a slow consumer lets it fill up.
"""

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import Any

from superbrain.core.logging import get_logger
from superbrain.core.types import Event

logger = get_logger("core.events")


class EventType(Enum):
    MEMORY_STORED = "memory_stored"
    THOUGHT_GENERATED = "thought_generated"
    CYCLE_COMPLETED = "cycle_completed"
    FILES_INDEXED = "files_indexed"


Listener = Callable[[Event], None]


class EventBus:
    """Fan-out of engine events to queues and synchronous listeners."""

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._queues: list[asyncio.Queue[Event]] = []
        self._listeners: list[Listener] = []
        self.dropped = 0

    def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Event]:
        """Get a new queue that receives every future event."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize or self._queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Event]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: Listener) -> None:
        """Register a callback; it must return quickly."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, name: EventType | str, payload: dict[str, Any] | None = None) -> Event:
        """Deliver an event to all observers without waiting on any of them."""
        event = Event(
            name=name.value if isinstance(name, EventType) else name,
            payload=payload or {},
        )

        for queue in list(self._queues):
            if queue.full():
                # Drop oldest
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                self.dropped += 1
            queue.put_nowait(event)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed on {event.name}: {e}")

        return event
