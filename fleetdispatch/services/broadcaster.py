"""Realtime fan-out of driver and order state changes.

Every event carries as its sequence the version of the record it describes.
Versions are persisted and grow by one per change of an entity, so a subscriber
can tell when it has missed events for a driver or order, even across restarts
and processes, and fetch a fresh snapshot instead of relying on replay. Events
that leave the record unchanged repeat its current version. Delivery across
different entities is not globally ordered.
"""

import asyncio
from collections import defaultdict
from typing import Any, Iterable
from uuid import UUID

from fleetdispatch.config import Settings, get_settings
from fleetdispatch.models.events import EntityType, Event
from fleetdispatch.state.manager import StateManager
from fleetdispatch.utils.logging import get_logger

logger = get_logger(__name__)

ALL_DRIVERS_TOPIC = "drivers"
ALL_ORDERS_TOPIC = "orders"


def driver_topic(driver_id: UUID) -> str:
    return f"driver:{driver_id}"


def order_topic(order_id: UUID) -> str:
    return f"order:{order_id}"


def entity_topics(entity_type: EntityType, entity_id: UUID) -> list[str]:
    """Topics every event of an entity is published to."""
    if entity_type == EntityType.DRIVER:
        return [driver_topic(entity_id), ALL_DRIVERS_TOPIC]
    return [order_topic(entity_id), ALL_ORDERS_TOPIC]


class Subscription:
    """Lazy, ordered, infinite stream of events for one topic.

    Iterate with ``async for``; the stream ends only when ``close`` is called.
    A slow subscriber keeps the newest ``maxsize`` events and loses the
    oldest, which shows up as a sequence gap.
    """

    def __init__(self, broadcaster: "RealtimeBroadcaster", topic: str, maxsize: int):
        self.topic = topic
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._last_sequences: dict[str, int] = {}

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: Event | None) -> None:
        """Queue an event without blocking the publisher."""
        if self._closed:
            return

        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1

        self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop the stream and detach from the broadcaster."""
        if self._closed:
            return

        self.deliver(None)
        self._closed = True
        self._broadcaster.unsubscribe(self)

    def detect_gap(self, event: Event) -> bool:
        """Record the event's sequence and report whether events were missed."""
        last = self._last_sequences.get(event.entity_key)
        if last is None:
            self._last_sequences[event.entity_key] = event.sequence
            return False

        self._last_sequences[event.entity_key] = max(last, event.sequence)
        return event.sequence > last + 1

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration

        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class RealtimeBroadcaster:
    """Publish/subscribe hub for state-change events."""

    def __init__(
        self,
        state_manager: StateManager | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.state_manager = state_manager
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._sequences: dict[str, int] = defaultdict(int)

    def subscribe(self, topic: str) -> Subscription:
        """Open a subscription to a topic."""
        subscription = Subscription(self, topic, self.settings.subscriber_queue_size)
        self._subscribers[topic].add(subscription)
        logger.debug("subscription_opened", topic=topic)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if subscribers is None:
            return

        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.topic]
        logger.debug("subscription_closed", topic=subscription.topic)

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(topic, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def _stamp(self, event: Event, sequence: int | None = None) -> Event:
        key = event.entity_key
        if sequence is None:
            sequence = self._sequences[key] + 1
        self._sequences[key] = max(self._sequences[key], sequence)
        return event.model_copy(update={"sequence": sequence})

    def _deliver(self, topics: Iterable[str], event: Event) -> None:
        for topic in topics:
            for subscription in list(self._subscribers.get(topic, ())):
                subscription.deliver(event)

    async def _mirror(self, topics: Iterable[str], event: Event) -> None:
        if self.state_manager is None:
            return

        message = event.model_dump_json()
        for topic in topics:
            try:
                await self.state_manager.publish(f"events:{topic}", message)
            except Exception as e:
                # Local subscribers already have the event; the mirror is best effort.
                logger.error("event_mirror_failed", topic=topic, error=str(e))

    async def publish(self, topic: str, event: Event) -> Event:
        """Publish an event to one topic, stamping its sequence if needed."""
        if event.sequence is None:
            event = self._stamp(event)

        self._deliver([topic], event)
        await self._mirror([topic], event)
        return event

    async def emit(
        self,
        entity_type: EntityType,
        entity_id: UUID,
        kind: str,
        payload: dict[str, Any],
        extra_topics: Iterable[str] = (),
        sequence: int | None = None,
    ) -> Event:
        """
        Publish a state change of an entity to all topics that follow it.

        Args:
            entity_type: Kind of entity that changed
            entity_id: Entity that changed
            kind: Event name, such as "driver.location"
            payload: Entity snapshot and event details
            extra_topics: Topics to publish to besides the entity's own
            sequence: Version of the record the event describes; without
                one, the next number in this process is used
        """
        event = self._stamp(
            Event(
                entity_type=entity_type,
                entity_id=entity_id,
                kind=kind,
                payload=payload,
            ),
            sequence,
        )
        topics = entity_topics(entity_type, entity_id) + list(extra_topics)

        # All local subscribers see the event before the first await.
        self._deliver(topics, event)
        await self._mirror(topics, event)

        logger.debug(
            "event_emitted",
            kind=kind,
            entity_id=str(entity_id),
            sequence=event.sequence,
        )
        return event

    def close(self) -> None:
        """End every open subscription."""
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                subscription.close()
