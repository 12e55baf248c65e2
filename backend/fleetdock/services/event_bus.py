"""Channel-keyed SSE event bus for operation output."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)

# Event kinds published on task channels
EVENT_DATA = "data"
EVENT_STDERR = "stderr"
EVENT_END = "end"
EVENT_ERROR = "error"


def task_channel(op_id: str) -> str:
    """Channel name for an operation: ``task:<opId>``."""
    return f"task:{op_id}"


class EventBus:
    """Lightweight async pub/sub keyed by channel.

    Subscribers get an ``asyncio.Queue`` of JSON strings. A subscriber whose
    queue is full is dropped rather than blocking publishers.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._channels: Dict[str, Set[asyncio.Queue[str]]] = {}
        self._lock = asyncio.Lock()
        self._max_queue_size = max_queue_size

    async def subscribe(self, channel: str) -> asyncio.Queue[str]:
        """Register a new listener on a channel and return its queue."""
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self._max_queue_size)
        async with self._lock:
            self._channels.setdefault(channel, set()).add(queue)
        return queue

    async def unsubscribe(self, channel: str, queue: asyncio.Queue[str]) -> None:
        """Remove a listener when the stream disconnects."""
        async with self._lock:
            listeners = self._channels.get(channel)
            if listeners is None:
                return
            listeners.discard(queue)
            if not listeners:
                del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def publish(self, channel: str, event: str, data: Any) -> None:
        """Broadcast an event to all listeners of a channel."""
        if not self._channels.get(channel):
            return

        payload = json.dumps(
            {
                "channel": channel,
                "event": event,
                "data": data,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )

        async with self._lock:
            dead_queues = []
            for queue in list(self._channels.get(channel, ())):
                try:
                    queue.put_nowait(payload)
                except asyncio.QueueFull:
                    logger.warning(f"Event queue full on {channel}, removing slow consumer")
                    dead_queues.append(queue)

            for queue in dead_queues:
                self._channels.get(channel, set()).discard(queue)
