"""Seed a driver pool for local development."""

import asyncio
from datetime import timedelta

from fleetdispatch.config import get_settings
from fleetdispatch.core import DispatchCore
from fleetdispatch.models.driver import (
    Driver,
    DriverStatus,
    Location,
    LocationFix,
    utcnow,
)
from fleetdispatch.models.order import Order

DRIVERS = [
    ("John Smith", 30.2672, -97.7431),
    ("Maria Garcia", 30.2750, -97.7400),
    ("Ahmed Khan", 30.2600, -97.7500),
    ("Sarah Johnson", 30.2850, -97.7350),
    ("Carlos Rodriguez", 30.3000, -97.7200),
]


async def seed_drivers(core: DispatchCore) -> None:
    """Register drivers, bring them online and report a first position."""
    print("Seeding drivers...")

    for name, lat, lng in DRIVERS:
        driver = await core.drivers.register(Driver(name=name, approved=True))

        version = await core.drivers.set_status(
            driver.id, DriverStatus.ONLINE, driver.version
        )
        await core.drivers.set_status(driver.id, DriverStatus.AVAILABLE, version)

        result = await core.ingest.record(
            LocationFix(
                driver_id=driver.id,
                lat=lat,
                lng=lng,
                accuracy=10.0,
                captured_at=utcnow() - timedelta(seconds=1),
            )
        )
        print(f"  ✓ Added {name} ({driver.id}, fix accepted: {result.accepted})")

    print("✓ Drivers seeded successfully\n")


async def seed_sample_order(core: DispatchCore) -> None:
    """Place one order near downtown and dispatch it."""
    print("Placing sample order...")

    order = Order(delivery_location=Location(lat=30.2700, lng=-97.7450))
    result = await core.place_order(order)

    print(f"  ✓ Order {order.id}: {result.outcome.value} (driver: {result.driver_id})")
    print("✓ Sample order placed\n")


async def main() -> None:
    """Run all seed functions."""
    print("\n" + "=" * 50)
    print("  Seeding Fleet Dispatch Data")
    print("=" * 50 + "\n")

    settings = get_settings()
    if settings.state_backend == "memory":
        print("⚠️  STATE_BACKEND is memory; seeded data lives only in this process.\n")

    core = DispatchCore(settings)
    await core.start(run_monitor=False)

    try:
        await seed_drivers(core)
        await seed_sample_order(core)
    finally:
        await core.stop()

    print("=" * 50)
    print("  ✓ All data seeded successfully!")
    print("=" * 50 + "\n")


if __name__ == "__main__":
    asyncio.run(main())
