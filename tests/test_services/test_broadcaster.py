"""Tests for the realtime broadcaster."""

import asyncio
from uuid import uuid4

import pytest

from fleetdispatch.config import Settings
from fleetdispatch.core import DispatchCore
from fleetdispatch.models.driver import Driver, LocationFix
from fleetdispatch.models.events import EntityType, Event
from fleetdispatch.models.order import Order
from fleetdispatch.services.broadcaster import (
    ALL_DRIVERS_TOPIC,
    RealtimeBroadcaster,
    driver_topic,
    order_topic,
)


async def next_event(subscription) -> Event:
    return await asyncio.wait_for(subscription.__anext__(), timeout=1)


@pytest.mark.asyncio
async def test_sequence_increases_per_entity() -> None:
    """Test that each entity numbers its own events from 1."""
    broadcaster = RealtimeBroadcaster(settings=Settings(_env_file=None))
    first, second = uuid4(), uuid4()

    a1 = await broadcaster.emit(EntityType.DRIVER, first, "driver.location", {})
    b1 = await broadcaster.emit(EntityType.DRIVER, second, "driver.location", {})
    a2 = await broadcaster.emit(EntityType.DRIVER, first, "driver.status", {})

    assert (a1.sequence, a2.sequence) == (1, 2)
    assert b1.sequence == 1


@pytest.mark.asyncio
async def test_subscribers_receive_events_in_order() -> None:
    """Test that entity and fleet topics both see every event."""
    broadcaster = RealtimeBroadcaster(settings=Settings(_env_file=None))
    driver_id = uuid4()
    one = broadcaster.subscribe(driver_topic(driver_id))
    fleet = broadcaster.subscribe(ALL_DRIVERS_TOPIC)
    other = broadcaster.subscribe(driver_topic(uuid4()))

    for kind in ("driver.status", "driver.location", "driver.location"):
        await broadcaster.emit(EntityType.DRIVER, driver_id, kind, {})
    broadcaster.close()

    received = [event.sequence async for event in one]
    assert received == [1, 2, 3]
    assert [event.sequence async for event in fleet] == [1, 2, 3]
    assert [event async for event in other] == []


@pytest.mark.asyncio
async def test_slow_subscriber_sees_a_gap() -> None:
    """Test that an overflowing queue drops the oldest events."""
    broadcaster = RealtimeBroadcaster(
        settings=Settings(_env_file=None, subscriber_queue_size=2)
    )
    driver_id = uuid4()
    subscription = broadcaster.subscribe(driver_topic(driver_id))

    for _ in range(5):
        await broadcaster.emit(EntityType.DRIVER, driver_id, "driver.location", {})

    assert subscription.dropped == 3
    first = await next_event(subscription)
    second = await next_event(subscription)
    assert (first.sequence, second.sequence) == (4, 5)


def test_detect_gap() -> None:
    """Test gap detection per entity."""
    broadcaster = RealtimeBroadcaster(settings=Settings(_env_file=None))
    subscription = broadcaster.subscribe(ALL_DRIVERS_TOPIC)
    first, second = uuid4(), uuid4()

    def event(entity_id, sequence) -> Event:
        return Event(
            entity_type=EntityType.DRIVER,
            entity_id=entity_id,
            kind="driver.location",
            sequence=sequence,
        )

    assert not subscription.detect_gap(event(first, 1))
    assert not subscription.detect_gap(event(second, 7))
    assert not subscription.detect_gap(event(first, 2))
    assert subscription.detect_gap(event(first, 4))
    assert not subscription.detect_gap(event(second, 8))
    # A late, older event does not move the mark back
    assert not subscription.detect_gap(event(first, 3))
    assert not subscription.detect_gap(event(first, 5))


@pytest.mark.asyncio
async def test_close_ends_iteration() -> None:
    """Test that a waiting consumer stops when its subscription closes."""
    broadcaster = RealtimeBroadcaster(settings=Settings(_env_file=None))
    subscription = broadcaster.subscribe(ALL_DRIVERS_TOPIC)

    async def consume() -> list[Event]:
        return [event async for event in subscription]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    subscription.close()

    assert await asyncio.wait_for(task, timeout=1) == []
    assert broadcaster.subscriber_count() == 0


@pytest.mark.asyncio
async def test_subscription_as_context_manager() -> None:
    """Test that leaving the context unsubscribes."""
    broadcaster = RealtimeBroadcaster(settings=Settings(_env_file=None))

    async with broadcaster.subscribe(ALL_DRIVERS_TOPIC):
        assert broadcaster.subscriber_count(ALL_DRIVERS_TOPIC) == 1

    assert broadcaster.subscriber_count(ALL_DRIVERS_TOPIC) == 0


@pytest.mark.asyncio
async def test_location_update_is_broadcast(
    sample_driver: Driver, core: DispatchCore, clock
) -> None:
    """Test that accepted fixes reach the driver's subscribers."""
    subscription = core.broadcaster.subscribe(driver_topic(sample_driver.id))

    await core.ingest.record(
        LocationFix(
            driver_id=sample_driver.id,
            lat=30.275,
            lng=-97.74,
            accuracy=5.0,
            captured_at=clock.now,
        )
    )

    event = await next_event(subscription)
    assert event.kind == "driver.location"
    assert event.payload["position"]["lat"] == 30.275
    assert event.payload["version"] == sample_driver.version + 1
    assert event.sequence == event.payload["version"]
    assert "trail" not in event.payload


@pytest.mark.asyncio
async def test_assignment_is_broadcast_to_order_and_driver(
    sample_driver: Driver, sample_order: Order, core: DispatchCore
) -> None:
    """Test that the assigned driver's feed carries its new order."""
    order_feed = core.broadcaster.subscribe(order_topic(sample_order.id))
    driver_feed = core.broadcaster.subscribe(driver_topic(sample_driver.id))

    await core.matcher.assign(sample_order.id)

    order_event = await next_event(order_feed)
    assert order_event.kind == "order.assigned"
    assert order_event.payload["driver_id"] == str(sample_driver.id)

    driver_kinds = [(await next_event(driver_feed)).kind for _ in range(2)]
    assert driver_kinds == ["driver.status", "order.assigned"]


@pytest.mark.asyncio
async def test_sequence_continues_after_restart(
    sample_driver: Driver, core: DispatchCore, settings, state_manager, clock
) -> None:
    """Test that a new process over the same store keeps numbering where it left off."""
    restarted = DispatchCore(settings, state_manager, clock)
    subscription = restarted.broadcaster.subscribe(driver_topic(sample_driver.id))
    subscription.detect_gap(
        Event(
            entity_type=EntityType.DRIVER,
            entity_id=sample_driver.id,
            kind="driver.status",
            sequence=sample_driver.version,
        )
    )

    await restarted.ingest.record(
        LocationFix(
            driver_id=sample_driver.id,
            lat=30.275,
            lng=-97.74,
            accuracy=5.0,
            captured_at=clock.now,
        )
    )

    event = await next_event(subscription)
    assert event.sequence == sample_driver.version + 1
    assert not subscription.detect_gap(event)
    restarted.broadcaster.close()


@pytest.mark.asyncio
async def test_events_without_a_change_repeat_the_version(
    sample_order: Order, core: DispatchCore
) -> None:
    """Test that a failed dispatch carries the order's current version."""
    feed = core.broadcaster.subscribe(order_topic(sample_order.id))

    await core.matcher.assign(sample_order.id)

    event = await next_event(feed)
    assert event.kind == "order.dispatch_failed"
    assert event.sequence == sample_order.version
