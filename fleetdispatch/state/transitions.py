"""State graphs for drivers and orders."""

from fleetdispatch.models.driver import DriverStatus
from fleetdispatch.models.order import OrderStatus


class DriverTransitions:
    """Valid driver status transitions."""

    TRANSITIONS = {
        DriverStatus.OFFLINE: [DriverStatus.ONLINE],
        DriverStatus.ONLINE: [
            DriverStatus.OFFLINE,
            DriverStatus.AVAILABLE,
        ],
        DriverStatus.AVAILABLE: [
            DriverStatus.OFFLINE,
            DriverStatus.ONLINE,
            DriverStatus.ON_DELIVERY,  # Only through an assignment
        ],
        DriverStatus.ON_DELIVERY: [
            DriverStatus.AVAILABLE,  # Delivery completed or order released
            DriverStatus.OFFLINE,  # Order released while signing off
        ],
    }

    # Edges that an order must move together with
    DISPATCH_ONLY = frozenset(
        {
            (DriverStatus.AVAILABLE, DriverStatus.ON_DELIVERY),
            (DriverStatus.ON_DELIVERY, DriverStatus.AVAILABLE),
            (DriverStatus.ON_DELIVERY, DriverStatus.OFFLINE),
        }
    )

    # Statuses an administrator may force outside the normal flow
    OVERRIDE_TARGETS = frozenset({DriverStatus.OFFLINE, DriverStatus.AVAILABLE})

    @classmethod
    def can_transition(cls, from_state: DriverStatus, to_state: DriverStatus) -> bool:
        """Check if a state transition is valid."""
        return to_state in cls.TRANSITIONS.get(from_state, [])

    @classmethod
    def is_dispatch_only(cls, from_state: DriverStatus, to_state: DriverStatus) -> bool:
        """Check if an edge is reserved for assignment and release."""
        return (from_state, to_state) in cls.DISPATCH_ONLY

    @classmethod
    def can_override(cls, from_state: DriverStatus, to_state: DriverStatus) -> bool:
        """Check if an administrator may force this change."""
        return (
            to_state in cls.OVERRIDE_TARGETS
            and DriverStatus.ON_DELIVERY not in (from_state, to_state)
        )


class OrderTransitions:
    """Valid order status transitions."""

    TRANSITIONS = {
        OrderStatus.PENDING: [
            OrderStatus.ASSIGNED,  # Only through an assignment
            OrderStatus.CANCELLED,
        ],
        OrderStatus.ASSIGNED: [
            OrderStatus.EN_ROUTE,
            OrderStatus.CANCELLED,
            OrderStatus.PENDING,  # Requeued after its driver was released
        ],
        OrderStatus.EN_ROUTE: [
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.PENDING,  # Requeued after its driver was released
        ],
        OrderStatus.DELIVERED: [],
        OrderStatus.CANCELLED: [],
    }

    DISPATCH_ONLY = frozenset(
        {
            (OrderStatus.PENDING, OrderStatus.ASSIGNED),
            (OrderStatus.ASSIGNED, OrderStatus.PENDING),
            (OrderStatus.EN_ROUTE, OrderStatus.PENDING),
        }
    )

    @classmethod
    def can_transition(cls, from_state: OrderStatus, to_state: OrderStatus) -> bool:
        """Check if a state transition is valid."""
        return to_state in cls.TRANSITIONS.get(from_state, [])

    @classmethod
    def is_dispatch_only(cls, from_state: OrderStatus, to_state: OrderStatus) -> bool:
        """Check if an edge is reserved for assignment and release."""
        return (from_state, to_state) in cls.DISPATCH_ONLY
