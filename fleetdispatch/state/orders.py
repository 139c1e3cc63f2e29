"""Order lifecycle and assignment records."""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable
from uuid import UUID

from fleetdispatch.config import Settings, get_settings
from fleetdispatch.errors import (
    AlreadyTerminal,
    InvalidInput,
    InvalidTransition,
    OrderNotFound,
    VersionConflict,
)
from fleetdispatch.models.driver import DriverStatus, utcnow
from fleetdispatch.models.events import EntityType
from fleetdispatch.models.order import Order, OrderStatus
from fleetdispatch.services.broadcaster import RealtimeBroadcaster, driver_topic
from fleetdispatch.state.drivers import DriverStateStore
from fleetdispatch.state.manager import RecordWrite, StateManager
from fleetdispatch.state.transitions import OrderTransitions
from fleetdispatch.utils.logging import DispatchLogger

if TYPE_CHECKING:
    from fleetdispatch.services.matcher import DispatchMatcher

ORDER_KIND = "order"


def order_payload(order: Order) -> dict[str, Any]:
    """Order snapshot as carried by events and API responses."""
    return order.model_dump(mode="json")


class OrderLedger:
    """Owns every order's lifecycle status and assignment record."""

    def __init__(
        self,
        state_manager: StateManager,
        drivers: DriverStateStore,
        broadcaster: RealtimeBroadcaster,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state = state_manager
        self.drivers = drivers
        self.broadcaster = broadcaster
        self.settings = settings or get_settings()
        self.clock = clock
        self.logger = DispatchLogger("order_ledger")
        self._dispatcher: "DispatchMatcher | None" = None

    def bind_dispatcher(self, dispatcher: "DispatchMatcher") -> None:
        """Attach the matcher whose release path frees assigned drivers."""
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> "DispatchMatcher":
        if self._dispatcher is None:
            raise RuntimeError("OrderLedger has no dispatcher bound")
        return self._dispatcher

    def record_write(self, order: Order) -> RecordWrite:
        """Build a write of ``order`` gated on the version it was read at."""
        return RecordWrite(
            ORDER_KIND,
            order.id,
            order.version,
            order.model_dump(mode="json"),
        )

    async def emit(self, order: Order, kind: str, **extra: Any) -> None:
        payload = order_payload(order)
        payload.update(extra)
        # The working driver's app follows its order too.
        extra_topics = [driver_topic(order.driver_id)] if order.driver_id else []
        await self.broadcaster.emit(
            EntityType.ORDER,
            order.id,
            kind,
            payload,
            extra_topics=extra_topics,
            sequence=order.version,
        )

    async def create(self, order: Order) -> UUID:
        """Record a newly placed order and return its ID."""
        if order.status != OrderStatus.PENDING or order.driver_id is not None:
            raise InvalidInput("New orders must be pending and unassigned")

        order = order.model_copy(update={"version": 0, "created_at": self.clock()})

        try:
            [version] = await self.state.commit([self.record_write(order)])
        except VersionConflict as e:
            raise InvalidInput(f"Order {order.id} already exists") from e

        order = order.model_copy(update={"version": version})
        self.logger.logger.info(
            "order_created",
            order_id=str(order.id),
            lat=order.delivery_location.lat,
            lng=order.delivery_location.lng,
        )
        await self.emit(order, "order.created")
        return order.id

    async def snapshot(self, order_id: UUID) -> Order:
        """Get the current record of an order."""
        data = await self.state.get(ORDER_KIND, order_id)

        if not data:
            raise OrderNotFound(f"Order {order_id} not found")

        return Order.model_validate(data)

    async def list_orders(self, status: OrderStatus | None = None) -> list[Order]:
        """Get orders, optionally only those in one status, oldest first."""
        records = await self.state.list_records(ORDER_KIND)
        orders = [Order.model_validate(record) for record in records]

        if status is not None:
            orders = [order for order in orders if order.status == status]

        orders.sort(key=lambda order: order.created_at)
        return orders

    async def transition(
        self,
        order_id: UUID,
        new_status: OrderStatus,
        expected_version: int,
    ) -> int:
        """
        Move an order along its lifecycle.

        Args:
            order_id: Order to update
            new_status: Status to move to
            expected_version: Version the caller last observed

        Returns:
            The order's new version

        Raises:
            VersionConflict: If the order changed since the caller read it
            AlreadyTerminal: If the order is delivered or cancelled
            InvalidTransition: If the status is not reachable
        """
        order = await self.snapshot(order_id)

        if order.version != expected_version:
            raise VersionConflict(ORDER_KIND, order_id, expected_version, order.version)

        if order.is_terminal:
            raise AlreadyTerminal(f"Order {order_id} is already {order.status.value}")

        if new_status == OrderStatus.CANCELLED:
            cancelled = await self.cancel(order_id, expected_version=expected_version)
            return cancelled.version

        if not OrderTransitions.can_transition(order.status, new_status):
            raise InvalidTransition(order.status.value, new_status.value)

        if OrderTransitions.is_dispatch_only(order.status, new_status):
            raise InvalidTransition(
                order.status.value, new_status.value, "only dispatch may make this change"
            )

        if new_status == OrderStatus.DELIVERED:
            return await self._complete(order)

        updated = order.model_copy(
            update={"status": new_status, "en_route_at": self.clock()}
        )
        [version] = await self.state.commit([self.record_write(updated)])
        updated = updated.model_copy(update={"version": version})

        self.logger.log_transition(
            "order", str(order_id), order.status.value, new_status.value, version
        )
        await self.emit(updated, "order.status", previous_status=order.status.value)
        return version

    async def _complete(self, order: Order) -> int:
        """Mark an order delivered and free its driver in the same commit."""
        for _ in range(self.settings.max_commit_retries):
            driver = await self.drivers.snapshot(order.driver_id)
            now = self.clock()

            updated_order = order.model_copy(
                update={"status": OrderStatus.DELIVERED, "delivered_at": now}
            )
            writes = [self.record_write(updated_order)]

            updated_driver = None
            if driver.current_order_id == order.id:
                updated_driver = driver.model_copy(
                    update={
                        "status": DriverStatus.AVAILABLE,
                        "current_order_id": None,
                        "completed_deliveries": driver.completed_deliveries + 1,
                        "status_changed_at": now,
                        "updated_at": now,
                    }
                )
                writes.append(self.drivers.record_write(updated_driver))

            try:
                versions = await self.state.commit(writes)
            except VersionConflict:
                current = await self.snapshot(order.id)
                if current.version != order.version:
                    raise VersionConflict(
                        ORDER_KIND, order.id, order.version, current.version
                    )
                # Only the driver moved (usually a location update); go again.
                self.logger.log_conflict("driver", str(driver.id), operation="complete")
                continue

            updated_order = updated_order.model_copy(update={"version": versions[0]})
            self.logger.log_transition(
                "order",
                str(order.id),
                order.status.value,
                OrderStatus.DELIVERED.value,
                versions[0],
                driver_id=str(driver.id),
            )

            if updated_driver is not None:
                updated_driver = updated_driver.model_copy(update={"version": versions[1]})
                self.drivers.logger.log_transition(
                    "driver",
                    str(driver.id),
                    driver.status.value,
                    DriverStatus.AVAILABLE.value,
                    versions[1],
                    order_id=str(order.id),
                )
                await self.drivers.emit(
                    updated_driver, "driver.status", previous_status=driver.status.value
                )

            await self.emit(
                updated_order, "order.status", previous_status=order.status.value
            )
            return versions[0]

        raise VersionConflict(ORDER_KIND, order.id)

    async def cancel(
        self,
        order_id: UUID,
        *,
        requeue: bool = False,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """
        Cancel an order, or with ``requeue`` hand it back for a new driver.

        Assigned and en-route orders are released through the dispatcher so
        their driver is freed in the same commit that closes the order.

        Raises:
            AlreadyTerminal: If the order is delivered or cancelled
        """
        for _ in range(self.settings.max_commit_retries):
            order = await self.snapshot(order_id)

            if expected_version is not None and order.version != expected_version:
                raise VersionConflict(
                    ORDER_KIND, order_id, expected_version, order.version
                )

            if order.is_terminal:
                raise AlreadyTerminal(f"Order {order_id} is already {order.status.value}")

            if order.has_driver:
                return await self.dispatcher.release(
                    order_id,
                    requeue=requeue,
                    reason=reason,
                    expected_version=order.version,
                )

            if requeue:
                # Still pending, so it is already waiting for a driver.
                return order

            updated = order.model_copy(
                update={
                    "status": OrderStatus.CANCELLED,
                    "cancelled_at": self.clock(),
                    "cancel_reason": reason,
                }
            )

            try:
                [version] = await self.state.commit([self.record_write(updated)])
            except VersionConflict:
                # Raced with an assignment; re-read and release instead.
                self.logger.log_conflict("order", str(order_id), operation="cancel")
                continue

            updated = updated.model_copy(update={"version": version})
            self.logger.log_transition(
                "order",
                str(order_id),
                order.status.value,
                OrderStatus.CANCELLED.value,
                version,
                reason=reason,
            )
            await self.emit(updated, "order.status", previous_status=order.status.value)
            return updated

        raise VersionConflict(ORDER_KIND, order_id)
