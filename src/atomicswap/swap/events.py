"""Typed swap event channel.

Every lifecycle step of a swap appends a ``SwapEvent`` to the swap's own
history and publishes it on the ``SwapEventBus``. Subscribers each get their
own queue so a slow consumer never blocks the engine.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class SwapEventType(str, Enum):
    """Lifecycle events published for a swap."""

    INITIATED = "initiated"
    LOCK_STARTED = "lock_started"
    LOCK_COMPLETED = "lock_completed"
    COMPLETION_STARTED = "completion_started"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    ROLLBACK_STARTED = "rollback_started"
    ROLLBACK_COMPLETED = "rollback_completed"


@dataclass
class SwapEvent:
    """A single entry of a swap's event log."""

    swap_id: str
    event_type: SwapEventType
    message: str
    created_at: datetime
    event_id: str = ""
    leg_index: Optional[int] = None
    chain: Optional[str] = None
    tx_hash: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "swap_id": self.swap_id,
            "type": self.event_type.value,
            "message": self.message,
            "leg_index": self.leg_index,
            "chain": self.chain,
            "tx_hash": self.tx_hash,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }


class SwapEventBus:
    """In-process publish/subscribe channel for swap events.

    Usage:
        bus = SwapEventBus()
        queue = bus.subscribe()
        ...
        event = await queue.get()
        bus.unsubscribe(queue)
    """

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: list[tuple[asyncio.Queue, Optional[set[SwapEventType]]]] = []

    def subscribe(self, event_types: Optional[set[SwapEventType]] = None) -> asyncio.Queue:
        """Register a subscriber, optionally filtered to some event types."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append((queue, event_types))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers = [(q, t) for q, t in self._subscribers if q is not queue]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: SwapEvent) -> None:
        """Deliver an event to every matching subscriber.

        A full queue drops the event for that subscriber only.
        """
        for queue, event_types in self._subscribers:
            if event_types is not None and event.event_type not in event_types:
                continue
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Event queue full, dropping {event.event_type.value} for swap {event.swap_id}"
                )
