"""Data models for the dispatch core."""

from fleetdispatch.models.driver import (
    Driver,
    DriverStatus,
    Location,
    LocationFix,
    Position,
)
from fleetdispatch.models.events import EntityType, Event
from fleetdispatch.models.order import Order, OrderStatus

__all__ = [
    # Driver
    "Driver",
    "DriverStatus",
    "Location",
    "LocationFix",
    "Position",
    # Events
    "EntityType",
    "Event",
    # Order
    "Order",
    "OrderStatus",
]
