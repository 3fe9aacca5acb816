"""
broadcaster.py — Real-time delivery notifications.

The dispatcher emits one ``DeliveryEvent`` per completed dispatch
(scheduled or immediate) and per ingested inbound message. Transport to
browsers (websocket, SSE) sits behind the ``Broadcaster`` protocol.

``InMemoryBroadcaster`` fans events out to ``asyncio.Queue`` subscribers
and keeps a bounded history for late joiners and diagnostics.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, List, Protocol, Set, runtime_checkable

from unifychat.messaging.models import DeliveryEvent

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 500
DEFAULT_QUEUE_SIZE = 100


@runtime_checkable
class Broadcaster(Protocol):
    async def publish(self, event: DeliveryEvent) -> None: ...


class InMemoryBroadcaster:
    """
    Process-local fan-out.

    A subscriber whose queue is full misses that event; other subscribers
    are unaffected.
    """

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._subscribers: Set[asyncio.Queue] = set()
        self._history: Deque[DeliveryEvent] = deque(maxlen=history_size)
        self._queue_size = queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def history(self, limit: int = 50) -> List[DeliveryEvent]:
        """Most recent events, newest last."""
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    async def publish(self, event: DeliveryEvent) -> None:
        self._history.append(event)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full, dropping %s for message %s",
                    event.event_type, event.message_id,
                )
        logger.debug(
            "Broadcast %s for message %s to %d subscribers",
            event.event_type, event.message_id, len(self._subscribers),
        )
