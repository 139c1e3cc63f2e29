"""Order-related data models."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from fleetdispatch.models.driver import Location, utcnow


class OrderStatus(str, Enum):
    """Order status progression."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({OrderStatus.ASSIGNED, OrderStatus.EN_ROUTE})


class Order(BaseModel):
    """Delivery order and its assignment record."""

    id: UUID = Field(default_factory=uuid4)
    status: OrderStatus = OrderStatus.PENDING
    delivery_location: Location
    driver_id: UUID | None = None
    version: int = 0

    # Timing
    created_at: datetime = Field(default_factory=utcnow)
    assigned_at: datetime | None = None
    en_route_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None

    cancel_reason: str | None = None
    requeue_count: int = 0
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """Delivered and cancelled orders never change again."""
        return self.status in TERMINAL_STATUSES

    @property
    def has_driver(self) -> bool:
        """Check if a driver is currently working this order."""
        return self.status in ACTIVE_STATUSES
