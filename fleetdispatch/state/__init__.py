"""State management modules."""

from fleetdispatch.state.manager import (
    MemoryStateManager,
    RecordWrite,
    RedisStateManager,
    StateManager,
    create_state_manager,
)
from fleetdispatch.state.transitions import DriverTransitions, OrderTransitions

__all__ = [
    "StateManager",
    "MemoryStateManager",
    "RedisStateManager",
    "RecordWrite",
    "create_state_manager",
    "DriverTransitions",
    "OrderTransitions",
]
