"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

from fleetdispatch.config import Settings
from fleetdispatch.core import DispatchCore
from fleetdispatch.models.driver import Driver, DriverStatus, Location, LocationFix
from fleetdispatch.models.order import Order
from fleetdispatch.state.manager import MemoryStateManager

# Downtown Austin
DRIVER_LAT, DRIVER_LNG = 30.27, -97.74
ORDER_LAT, ORDER_LNG = 30.28, -97.75


class MutableClock:
    """Test clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    """Create a clock fixed at a known instant."""
    return MutableClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    """Create settings that ignore any local .env file."""
    return Settings(_env_file=None, state_backend="memory", location_history_size=5)


@pytest_asyncio.fixture
async def state_manager() -> AsyncGenerator[MemoryStateManager, None]:
    """Create a test state manager."""
    manager = MemoryStateManager()
    await manager.connect()
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def core(
    settings: Settings,
    state_manager: MemoryStateManager,
    clock: MutableClock,
) -> AsyncGenerator[DispatchCore, None]:
    """Create a dispatch core without the background monitor."""
    dispatch_core = DispatchCore(settings, state_manager, clock)
    await dispatch_core.start(run_monitor=False)
    yield dispatch_core
    await dispatch_core.stop()


MakeDriver = Callable[..., Awaitable[Driver]]


@pytest.fixture
def make_driver(core: DispatchCore, clock: MutableClock) -> MakeDriver:
    """Factory for registered drivers in a given status and position."""

    async def _make_driver(
        lat: float | None = DRIVER_LAT,
        lng: float | None = DRIVER_LNG,
        status: DriverStatus = DriverStatus.AVAILABLE,
        approved: bool = True,
        name: str = "Test Driver",
    ) -> Driver:
        driver = await core.drivers.register(Driver(name=name, approved=approved))
        version = driver.version

        if status in (DriverStatus.ONLINE, DriverStatus.AVAILABLE):
            version = await core.drivers.set_status(driver.id, DriverStatus.ONLINE, version)
        if status == DriverStatus.AVAILABLE:
            await core.drivers.set_status(driver.id, DriverStatus.AVAILABLE, version)

        if lat is not None and lng is not None:
            result = await core.ingest.record(
                LocationFix(
                    driver_id=driver.id,
                    lat=lat,
                    lng=lng,
                    accuracy=5.0,
                    captured_at=clock.now - timedelta(seconds=1),
                )
            )
            assert result.accepted

        return await core.drivers.snapshot(driver.id)

    return _make_driver


MakeOrder = Callable[..., Awaitable[Order]]


@pytest.fixture
def make_order(core: DispatchCore) -> MakeOrder:
    """Factory for pending orders."""

    async def _make_order(lat: float = ORDER_LAT, lng: float = ORDER_LNG) -> Order:
        order_id = await core.orders.create(
            Order(delivery_location=Location(lat=lat, lng=lng))
        )
        return await core.orders.snapshot(order_id)

    return _make_order


# Sample data fixtures


@pytest_asyncio.fixture
async def sample_driver(make_driver: MakeDriver) -> Driver:
    """Create an approved, available driver with a fresh position."""
    return await make_driver()


@pytest_asyncio.fixture
async def sample_order(make_order: MakeOrder) -> Order:
    """Create a pending order about 1.5 km from the sample driver."""
    return await make_order()
