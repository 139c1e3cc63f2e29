"""Process-wide dispatch state with explicit startup and teardown."""

from datetime import datetime
from typing import Callable

from fleetdispatch.api.connections import ConnectionManager
from fleetdispatch.config import Settings, get_settings
from fleetdispatch.models.driver import utcnow
from fleetdispatch.models.order import Order
from fleetdispatch.services.broadcaster import RealtimeBroadcaster
from fleetdispatch.services.ingest import LocationIngest
from fleetdispatch.services.matcher import AssignmentResult, DispatchMatcher
from fleetdispatch.services.monitor import StalenessMonitor
from fleetdispatch.state.drivers import DriverStateStore
from fleetdispatch.state.manager import StateManager, create_state_manager
from fleetdispatch.state.orders import OrderLedger
from fleetdispatch.utils.logging import get_logger

logger = get_logger(__name__)


class DispatchCore:
    """Wires the stores and services around one record store.

    Components receive their collaborators from here instead of reaching for
    module-level singletons.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        state_manager: StateManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.state = state_manager or create_state_manager(self.settings)

        self.broadcaster = RealtimeBroadcaster(self.state, self.settings)
        self.drivers = DriverStateStore(self.state, self.broadcaster, self.settings, clock)
        self.orders = OrderLedger(
            self.state, self.drivers, self.broadcaster, self.settings, clock
        )
        self.matcher = DispatchMatcher(
            self.state, self.drivers, self.orders, self.settings, clock
        )
        self.orders.bind_dispatcher(self.matcher)
        self.drivers.bind_dispatcher(self.matcher)
        self.ingest = LocationIngest(self.drivers, self.settings, clock)
        self.monitor = StalenessMonitor(
            self.drivers, self.settings.staleness_sweep_interval_seconds
        )
        self.connections = ConnectionManager()

    async def start(self, run_monitor: bool = True) -> None:
        """Connect the record store and start background work."""
        await self.state.connect()
        if run_monitor:
            self.monitor.start()
        logger.info("dispatch_core_started", backend=self.settings.state_backend)

    async def stop(self) -> None:
        """Stop background work and release connections."""
        await self.monitor.stop()
        await self.connections.close_all()
        self.broadcaster.close()
        await self.state.disconnect()
        logger.info("dispatch_core_stopped")

    async def place_order(self, order: Order) -> AssignmentResult:
        """Record a new order and try to dispatch it straight away."""
        order_id = await self.orders.create(order)
        return await self.matcher.assign(order_id)
