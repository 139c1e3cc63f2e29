"""Tests for the dispatch matcher."""

import asyncio
from typing import Awaitable, Callable

import pytest
import pytest_asyncio

from fleetdispatch.core import DispatchCore
from fleetdispatch.models.driver import Driver, DriverStatus, LocationFix
from fleetdispatch.models.order import Order, OrderStatus
from fleetdispatch.services.matcher import AssignmentOutcome
from fleetdispatch.state.manager import MemoryStateManager, RecordWrite


class InterleavingStateManager(MemoryStateManager):
    """Runs a competing change right before the next multi-record commit."""

    def __init__(self) -> None:
        super().__init__()
        self.before_commit: Callable[[], Awaitable[None]] | None = None

    async def commit(self, writes: list[RecordWrite]) -> list[int]:
        if self.before_commit is not None and len(writes) > 1:
            competing, self.before_commit = self.before_commit, None
            await competing()
        return await super().commit(writes)


@pytest_asyncio.fixture
async def state_manager():
    """Create a state manager that can interleave competing writes."""
    manager = InterleavingStateManager()
    await manager.connect()
    yield manager
    await manager.disconnect()


@pytest.mark.asyncio
async def test_assign_nearest_driver(
    sample_driver: Driver, sample_order: Order, core: DispatchCore
) -> None:
    """Test that an available driver in range gets the order."""
    result = await core.matcher.assign(sample_order.id)

    assert result.outcome == AssignmentOutcome.ASSIGNED
    assert result.driver_id == sample_driver.id
    assert result.distance_km == pytest.approx(1.47, abs=0.05)

    driver = await core.drivers.snapshot(sample_driver.id)
    order = await core.orders.snapshot(sample_order.id)
    assert driver.status == DriverStatus.ON_DELIVERY
    assert driver.current_order_id == order.id
    assert order.status == OrderStatus.ASSIGNED
    assert order.driver_id == driver.id


@pytest.mark.asyncio
async def test_one_driver_two_orders(sample_driver: Driver, make_order, core: DispatchCore) -> None:
    """Test that a single driver is never given two orders."""
    first = await make_order()
    second = await make_order()

    results = await asyncio.gather(
        core.matcher.assign(first.id),
        core.matcher.assign(second.id),
    )

    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes == ["assigned", "no_driver_available"]

    winner = next(result for result in results if result.assigned)
    driver = await core.drivers.snapshot(sample_driver.id)
    assert driver.current_order_id == winner.order_id
    assert len(await core.orders.list_orders(OrderStatus.PENDING)) == 1


@pytest.mark.asyncio
async def test_assign_already_assigned_order(
    sample_driver: Driver, sample_order: Order, core: DispatchCore
) -> None:
    """Test that assigning twice reports the existing driver."""
    await core.matcher.assign(sample_order.id)

    again = await core.matcher.assign(sample_order.id)

    assert again.outcome == AssignmentOutcome.ALREADY_ASSIGNED
    assert again.driver_id == sample_driver.id


@pytest.mark.asyncio
async def test_assign_cancelled_order(sample_driver: Driver, sample_order: Order, core: DispatchCore) -> None:
    """Test that a cancelled order is not assigned."""
    await core.orders.cancel(sample_order.id)

    result = await core.matcher.assign(sample_order.id)

    assert result.outcome == AssignmentOutcome.ABORTED
    assert (await core.drivers.snapshot(sample_driver.id)).status == DriverStatus.AVAILABLE


@pytest.mark.asyncio
async def test_no_driver_leaves_order_pending(sample_order: Order, core: DispatchCore) -> None:
    """Test that an unmatched order stays pending for a later retry."""
    result = await core.matcher.assign(sample_order.id)

    assert result.outcome == AssignmentOutcome.NO_DRIVER_AVAILABLE
    assert result.radius_km == core.settings.max_search_radius_km
    assert (await core.orders.snapshot(sample_order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_search_radius_widens(make_driver, sample_order: Order, core: DispatchCore) -> None:
    """Test that drivers beyond the preferred radius are still found."""
    # About 8 km north of the order
    driver = await make_driver(lat=30.352, lng=-97.75)

    result = await core.matcher.assign(sample_order.id)

    assert result.driver_id == driver.id
    assert result.radius_km > core.settings.preferred_search_radius_km
    assert result.radius_km <= core.settings.max_search_radius_km


@pytest.mark.asyncio
async def test_driver_beyond_max_radius_is_ignored(
    make_driver, sample_order: Order, core: DispatchCore
) -> None:
    """Test that the search stops at the maximum radius."""
    # About 22 km north of the order
    await make_driver(lat=30.48, lng=-97.75)

    result = await core.matcher.assign(sample_order.id)

    assert result.outcome == AssignmentOutcome.NO_DRIVER_AVAILABLE


@pytest.mark.asyncio
async def test_unavailable_drivers_are_skipped(
    make_driver, sample_order: Order, core: DispatchCore
) -> None:
    """Test that online but unavailable drivers are never assigned."""
    await make_driver(status=DriverStatus.ONLINE)
    await make_driver(status=DriverStatus.OFFLINE)

    result = await core.matcher.assign(sample_order.id)

    assert result.outcome == AssignmentOutcome.NO_DRIVER_AVAILABLE


@pytest.mark.asyncio
async def test_equal_distance_prefers_longest_waiting(
    make_driver, make_order, core: DispatchCore
) -> None:
    """Test that ties go to the driver assigned least recently."""
    first = await make_driver(name="First")
    second = await make_driver(name="Second")

    order = await make_order()
    result = await core.matcher.assign(order.id)
    assert result.driver_id == first.id

    order = await core.orders.snapshot(order.id)
    version = await core.orders.transition(order.id, OrderStatus.EN_ROUTE, order.version)
    await core.orders.transition(order.id, OrderStatus.DELIVERED, version)

    next_order = await make_order()
    result = await core.matcher.assign(next_order.id)

    assert result.driver_id == second.id


@pytest.mark.asyncio
async def test_conflict_moves_to_next_candidate(
    make_driver, sample_order: Order, core: DispatchCore, state_manager
) -> None:
    """Test that a candidate who changes mid-assignment is passed over."""
    nearest = await make_driver(lat=30.279, lng=-97.75)
    fallback = await make_driver(lat=30.27, lng=-97.74)

    async def nearest_signs_off() -> None:
        await core.drivers.set_status(nearest.id, DriverStatus.OFFLINE, nearest.version)

    state_manager.before_commit = nearest_signs_off
    result = await core.matcher.assign(sample_order.id)

    assert result.outcome == AssignmentOutcome.ASSIGNED
    assert result.driver_id == fallback.id
    assert result.attempts == 2
    assert (await core.drivers.snapshot(nearest.id)).current_order_id is None


@pytest.mark.asyncio
async def test_cancel_during_assignment_aborts(
    sample_driver: Driver, sample_order: Order, core: DispatchCore, state_manager
) -> None:
    """Test that an order cancelled mid-assignment is left cancelled."""

    async def customer_cancels() -> None:
        await core.orders.cancel(sample_order.id, reason="customer_request")

    state_manager.before_commit = customer_cancels
    result = await core.matcher.assign(sample_order.id)

    assert result.outcome == AssignmentOutcome.ABORTED
    assert (await core.orders.snapshot(sample_order.id)).status == OrderStatus.CANCELLED
    driver = await core.drivers.snapshot(sample_driver.id)
    assert driver.status == DriverStatus.AVAILABLE
    assert driver.current_order_id is None


@pytest.mark.asyncio
async def test_cancelled_assignment_frees_driver_for_next_order(
    sample_driver: Driver, sample_order: Order, make_order, core: DispatchCore
) -> None:
    """Test that a driver released by a cancellation can be assigned again."""
    await core.matcher.assign(sample_order.id)
    await core.orders.cancel(sample_order.id)

    driver = await core.drivers.snapshot(sample_driver.id)
    assert driver.status == DriverStatus.AVAILABLE

    next_order = await make_order()
    result = await core.matcher.assign(next_order.id)

    assert result.driver_id == sample_driver.id


@pytest.mark.asyncio
async def test_release_with_requeue_reassigns(
    make_driver, sample_order: Order, core: DispatchCore
) -> None:
    """Test that a driver signing off mid-delivery hands the order on."""
    first = await make_driver(lat=30.279, lng=-97.75)
    second = await make_driver(lat=30.27, lng=-97.74)
    await core.matcher.assign(sample_order.id)

    order = await core.matcher.release(
        sample_order.id,
        requeue=True,
        driver_status=DriverStatus.OFFLINE,
        reason="driver_forced_offline",
    )

    assert order.status == OrderStatus.ASSIGNED
    assert order.driver_id == second.id
    assert order.requeue_count == 1
    released = await core.drivers.snapshot(first.id)
    assert released.status == DriverStatus.OFFLINE
    assert released.current_order_id is None


@pytest.mark.asyncio
async def test_location_update_during_assignment_keeps_driver(
    sample_driver: Driver, sample_order: Order, core: DispatchCore, state_manager, clock
) -> None:
    """Test that a driver reporting its position mid-assignment still gets the order."""

    async def driver_reports_position() -> None:
        result = await core.ingest.record(
            LocationFix(
                driver_id=sample_driver.id,
                lat=30.271,
                lng=-97.741,
                accuracy=5.0,
                captured_at=clock.now,
            )
        )
        assert result.accepted

    state_manager.before_commit = driver_reports_position
    result = await core.matcher.assign(sample_order.id)

    assert result.outcome == AssignmentOutcome.ASSIGNED
    assert result.driver_id == sample_driver.id
    assert result.attempts == 2

    driver = await core.drivers.snapshot(sample_driver.id)
    assert driver.current_order_id == sample_order.id
    assert driver.position.lat == 30.271


@pytest.mark.asyncio
async def test_requeue_goes_to_another_driver(
    make_driver, sample_order: Order, core: DispatchCore
) -> None:
    """Test that a requeued order is not handed back to the driver it came from."""
    first = await make_driver(lat=30.279, lng=-97.75)
    second = await make_driver(lat=30.27, lng=-97.74)
    await core.matcher.assign(sample_order.id)

    order = await core.orders.cancel(sample_order.id, requeue=True, reason="driver_request")

    assert order.status == OrderStatus.ASSIGNED
    assert order.driver_id == second.id
    released = await core.drivers.snapshot(first.id)
    assert released.status == DriverStatus.AVAILABLE
    assert released.current_order_id is None


@pytest.mark.asyncio
async def test_requeue_without_other_drivers_stays_pending(
    sample_driver: Driver, sample_order: Order, core: DispatchCore
) -> None:
    """Test that a requeued order waits rather than returning to the same driver."""
    await core.matcher.assign(sample_order.id)

    order = await core.orders.cancel(sample_order.id, requeue=True)

    assert order.status == OrderStatus.PENDING
    assert order.driver_id is None
    assert (await core.drivers.snapshot(sample_driver.id)).is_available

    result = await core.matcher.assign(sample_order.id)
    assert result.driver_id == sample_driver.id
