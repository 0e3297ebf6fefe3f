"""
Topic event bus for realtime order and agent updates.

Provides an in-process pub/sub used by the tracking coordinator to fan out
committed state changes to SSE clients. Topics are ``order:<id>`` and
``agent:<id>``. Delivery is at-most-once with no replay: a subscriber only
sees events published while it is subscribed.
"""

from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List, Optional, Set
from uuid import UUID
import asyncio
import itertools
import logging
import time


logger = logging.getLogger(__name__)

ORDER_TOPIC_PREFIX = "order"
AGENT_TOPIC_PREFIX = "agent"

# Event types
ORDER_STATUS_CHANGED = "order-status-changed"
ORDER_TRACKING_UPDATED = "order-tracking-updated"
ORDER_ASSIGNED = "order-assigned"
AGENT_LOCATION_CHANGED = "agent-location-changed"
AGENT_STATUS_CHANGED = "agent-status-changed"


def order_topic(order_id: UUID) -> str:
    return f"{ORDER_TOPIC_PREFIX}:{order_id}"


def agent_topic(agent_id: UUID) -> str:
    return f"{AGENT_TOPIC_PREFIX}:{agent_id}"


def parse_topic(topic: str) -> str:
    """
    Validate a topic string and return it in canonical form.

    Raises:
        ValueError: if the prefix is unknown or the id is not a UUID
    """
    prefix, sep, raw_id = topic.partition(":")
    if not sep or prefix not in (ORDER_TOPIC_PREFIX, AGENT_TOPIC_PREFIX):
        raise ValueError(f"Unknown topic: {topic}")
    return f"{prefix}:{UUID(raw_id)}"


class _Closed:
    """Sentinel placed on a queue to end iteration."""


_CLOSED = _Closed()


class Subscription:
    """
    Handle for one listener on one topic.

    Owns a bounded queue; when the queue is full the oldest pending event is
    discarded to make room, so a slow listener never holds up publishers.
    """

    _ids = itertools.count(1)

    def __init__(self, bus: "EventBus", topic: str, buffer_size: int) -> None:
        self.id = next(self._ids)
        self.topic = topic
        self.dropped = 0
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            if item is not _CLOSED:
                self.dropped += 1
        self._queue.put_nowait(item)

    def deliver(self, event: Dict[str, Any]) -> bool:
        if self._closed:
            return False
        self._offer(event)
        return True

    async def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Wait for the next event.

        Returns None once the subscription is closed and drained.

        Raises:
            asyncio.TimeoutError: if ``timeout`` elapses first
        """
        if self._closed and self._queue.empty():
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            return None
        return item

    def get_nowait(self) -> Optional[Dict[str, Any]]:
        """Next buffered event, or None if nothing is queued."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._offer(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventBus:
    """
    In-process topic pub/sub.

    ``publish`` is synchronous and never awaits a subscriber. Events published
    to one topic reach each of its subscribers in publish order.
    """

    def __init__(self, buffer_size: int = 100) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self._buffer_size = buffer_size
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, topic: str) -> Subscription:
        subscription = Subscription(self, topic, self._buffer_size)
        self._subscribers[topic].add(subscription)
        logger.debug(f"Subscription {subscription.id} opened on {topic}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscription. Closing an already-closed handle is a no-op."""
        if subscription.closed:
            return
        listeners = self._subscribers.get(subscription.topic)
        if listeners is not None:
            listeners.discard(subscription)
            if not listeners:
                del self._subscribers[subscription.topic]
        subscription._mark_closed()
        logger.debug(f"Subscription {subscription.id} closed on {subscription.topic}")

    def publish(self, topic: str, event: Dict[str, Any]) -> int:
        """
        Deliver an event to every current subscriber of ``topic``.

        Returns:
            Number of subscribers the event was queued for
        """
        listeners = self._subscribers.get(topic)
        if not listeners:
            return 0
        delivered = 0
        for subscription in sorted(listeners, key=lambda s: s.id):
            if subscription.deliver(event):
                delivered += 1
        return delivered

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(topic, ()))
        return sum(len(listeners) for listeners in self._subscribers.values())

    def topics(self) -> List[str]:
        return sorted(self._subscribers)

    def close(self) -> None:
        """Close every subscription; their iterators finish after draining."""
        for listeners in list(self._subscribers.values()):
            for subscription in list(listeners):
                self.unsubscribe(subscription)
        self._subscribers.clear()


def make_event(
    event_type: str,
    topic: str,
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Create a standardized event dictionary.

    Args:
        event_type: Event name (e.g., "order-status-changed")
        topic: Topic the event is published on
        payload: Resource body, shaped like the matching REST response

    Returns:
        Formatted event dictionary
    """
    return {
        "type": event_type,
        "topic": topic,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "payload": payload or {},
    }
