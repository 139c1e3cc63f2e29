"""Dispatch matcher - pairs pending orders with available drivers."""

from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable
from uuid import UUID

from pydantic import BaseModel

from fleetdispatch.config import Settings, get_settings
from fleetdispatch.errors import AlreadyTerminal, VersionConflict
from fleetdispatch.models.driver import Driver, DriverStatus, utcnow
from fleetdispatch.models.order import Order, OrderStatus
from fleetdispatch.state.drivers import DriverStateStore
from fleetdispatch.state.manager import StateManager
from fleetdispatch.state.orders import ORDER_KIND, OrderLedger
from fleetdispatch.utils.geo import haversine_km
from fleetdispatch.utils.logging import DispatchLogger
from fleetdispatch.utils.tracing import DispatchTracer

NEVER_ASSIGNED = datetime.min.replace(tzinfo=timezone.utc)


class AssignmentOutcome(str, Enum):
    """Result of an assignment attempt."""

    ASSIGNED = "assigned"
    NO_DRIVER_AVAILABLE = "no_driver_available"
    ALREADY_ASSIGNED = "already_assigned"
    ABORTED = "aborted"


class AssignmentResult(BaseModel):
    """Outcome of assigning one order."""

    order_id: UUID
    outcome: AssignmentOutcome
    driver_id: UUID | None = None
    distance_km: float | None = None
    radius_km: float | None = None
    attempts: int = 0

    @property
    def assigned(self) -> bool:
        return self.outcome == AssignmentOutcome.ASSIGNED


class DispatchMatcher:
    """
    Assigns pending orders to the nearest available driver.

    Candidates come from a snapshot that may already be out of date when the
    assignment is committed. The commit is a compare-and-set over both the
    driver and the order, so a candidate that changed in the meantime fails
    and is tried again only while it is still available.
    """

    def __init__(
        self,
        state_manager: StateManager,
        drivers: DriverStateStore,
        orders: OrderLedger,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state = state_manager
        self.drivers = drivers
        self.orders = orders
        self.settings = settings or get_settings()
        self.clock = clock
        self.logger = DispatchLogger("dispatch_matcher")

    async def rank_candidates(
        self,
        order: Order,
        radius_km: float,
        exclude: set[UUID] | frozenset[UUID] = frozenset(),
    ) -> list[tuple[Driver, float]]:
        """
        Rank available drivers within a radius of the delivery location.

        Nearest first; among drivers at the same distance, the one that has
        waited longest since its last assignment goes first.

        Returns:
            (driver, distance_km) pairs in ranking order
        """
        center = order.delivery_location
        drivers = await self.drivers.list_available(
            within_radius_km=radius_km, center=center
        )

        ranked = []
        for driver in drivers:
            if driver.id in exclude:
                continue
            distance = haversine_km(
                center.lat, center.lng, driver.position.lat, driver.position.lng
            )
            ranked.append((driver, distance))

        # Metre resolution so that practically equal distances count as a tie
        ranked.sort(
            key=lambda item: (
                round(item[1], 3),
                item[0].last_assigned_at or NEVER_ASSIGNED,
            )
        )
        return ranked

    def _closed_result(self, order: Order, attempts: int = 0) -> AssignmentResult | None:
        """Result for an order that can no longer be assigned, else None."""
        if order.status == OrderStatus.PENDING:
            return None

        if order.has_driver:
            outcome = AssignmentOutcome.ALREADY_ASSIGNED
        else:
            outcome = AssignmentOutcome.ABORTED

        return AssignmentResult(
            order_id=order.id,
            outcome=outcome,
            driver_id=order.driver_id,
            attempts=attempts,
        )

    async def _recheck(
        self, order: Order, driver_id: UUID, radius_km: float
    ) -> tuple[Driver, float] | None:
        """Fresh record of a candidate that is still eligible, else None."""
        driver = await self.drivers.snapshot(driver_id)
        if not driver.is_available or driver.position is None:
            return None

        center = order.delivery_location
        distance = haversine_km(
            center.lat, center.lng, driver.position.lat, driver.position.lng
        )
        if distance > radius_km:
            return None
        return driver, distance

    async def assign(
        self, order_id: UUID, exclude: Iterable[UUID] = ()
    ) -> AssignmentResult:
        """
        Assign a pending order to a driver.

        A candidate whose record changed before the commit is re-read; if it
        is still available (a location update, say) it is tried again,
        otherwise the search moves on.

        Args:
            order_id: Order to assign
            exclude: Drivers never to consider for this order

        Returns:
            AssignmentResult; the order stays pending unless it is assigned
        """
        tracer = DispatchTracer(order_id)
        order = await self.orders.snapshot(order_id)

        closed = self._closed_result(order)
        if closed is not None:
            self.logger.log_assignment(str(order_id), closed.outcome.value)
            return closed

        radius = self.settings.preferred_search_radius_km
        max_attempts = self.settings.max_assignment_attempts
        tried: set[UUID] = set(exclude)
        result = None

        while result is None:
            for candidate in await self.rank_candidates(order, radius, tried):
                tried.add(candidate[0].id)

                while candidate is not None and tracer.attempts < max_attempts:
                    driver, distance = candidate
                    with tracer.trace_attempt(driver.id, distance_km=distance) as attempt:
                        try:
                            await self._commit_assignment(order, driver)
                        except VersionConflict:
                            attempt["outcome"] = "conflict"
                        else:
                            attempt["outcome"] = "assigned"

                    if attempt["outcome"] == "assigned":
                        result = AssignmentResult(
                            order_id=order_id,
                            outcome=AssignmentOutcome.ASSIGNED,
                            driver_id=driver.id,
                            distance_km=distance,
                            radius_km=radius,
                            attempts=tracer.attempts,
                        )
                        break

                    # Either the driver or the order moved; only the order ends the search.
                    order = await self.orders.snapshot(order_id)
                    result = self._closed_result(order, tracer.attempts)
                    if result is not None:
                        break

                    candidate = await self._recheck(order, driver.id, radius)

                if result is not None or tracer.attempts >= max_attempts:
                    break

            if result is not None:
                break

            exhausted = tracer.attempts >= max_attempts
            if exhausted or radius >= self.settings.max_search_radius_km:
                result = AssignmentResult(
                    order_id=order_id,
                    outcome=AssignmentOutcome.NO_DRIVER_AVAILABLE,
                    radius_km=radius,
                    attempts=tracer.attempts,
                )
                await self.orders.emit(
                    order,
                    "order.dispatch_failed",
                    radius_km=radius,
                    attempts=tracer.attempts,
                )
                break

            radius = min(
                radius * self.settings.search_radius_growth,
                self.settings.max_search_radius_km,
            )
            tracer.add_event("radius_widened", radius_km=radius)

        summary = tracer.get_trace_summary()
        self.logger.log_assignment(
            str(order_id),
            result.outcome.value,
            driver_id=str(result.driver_id) if result.driver_id else None,
            duration_ms=summary["total_duration_ms"],
            attempts=result.attempts,
            radius_km=result.radius_km,
        )
        return result

    async def _commit_assignment(self, order: Order, driver: Driver) -> None:
        """Pair one order with one driver in a single compare-and-set."""
        now = self.clock()

        updated_order = order.model_copy(
            update={
                "status": OrderStatus.ASSIGNED,
                "driver_id": driver.id,
                "assigned_at": now,
            }
        )
        updated_driver = driver.model_copy(
            update={
                "status": DriverStatus.ON_DELIVERY,
                "current_order_id": order.id,
                "last_assigned_at": now,
                "status_changed_at": now,
                "updated_at": now,
            }
        )

        order_version, driver_version = await self.state.commit(
            [
                self.orders.record_write(updated_order),
                self.drivers.record_write(updated_driver),
            ]
        )
        updated_order = updated_order.model_copy(update={"version": order_version})
        updated_driver = updated_driver.model_copy(update={"version": driver_version})

        self.drivers.logger.log_transition(
            "driver",
            str(driver.id),
            driver.status.value,
            DriverStatus.ON_DELIVERY.value,
            driver_version,
            order_id=str(order.id),
        )
        await self.drivers.emit(
            updated_driver, "driver.status", previous_status=driver.status.value
        )
        await self.orders.emit(
            updated_order, "order.assigned", previous_status=order.status.value
        )

    async def release(
        self,
        order_id: UUID,
        *,
        requeue: bool,
        driver_status: DriverStatus = DriverStatus.AVAILABLE,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """
        Free the driver of an assigned or en-route order.

        The driver's release and the order's change are one commit, so no
        reader ever sees a driver on a delivery without an active order.

        Args:
            order_id: Order whose driver is released
            requeue: Put the order back to pending and dispatch it again
                instead of cancelling it
            driver_status: Status the driver returns to
            reason: Cancellation reason recorded on the order
            expected_version: Order version the caller last observed

        Returns:
            The order after release (and re-dispatch, when requeued)
        """
        for _ in range(self.settings.max_commit_retries):
            order = await self.orders.snapshot(order_id)

            if expected_version is not None and order.version != expected_version:
                raise VersionConflict(
                    ORDER_KIND, order_id, expected_version, order.version
                )

            if order.is_terminal:
                raise AlreadyTerminal(f"Order {order_id} is already {order.status.value}")

            if not order.has_driver:
                return await self.orders.cancel(
                    order_id,
                    requeue=requeue,
                    reason=reason,
                    expected_version=expected_version,
                )

            driver = await self.drivers.snapshot(order.driver_id)
            now = self.clock()

            if requeue:
                updated_order = order.model_copy(
                    update={
                        "status": OrderStatus.PENDING,
                        "driver_id": None,
                        "assigned_at": None,
                        "en_route_at": None,
                        "requeue_count": order.requeue_count + 1,
                    }
                )
            else:
                updated_order = order.model_copy(
                    update={
                        "status": OrderStatus.CANCELLED,
                        "cancelled_at": now,
                        "cancel_reason": reason,
                    }
                )
            writes = [self.orders.record_write(updated_order)]

            updated_driver = None
            if driver.current_order_id == order.id:
                updated_driver = driver.model_copy(
                    update={
                        "status": driver_status,
                        "current_order_id": None,
                        "status_changed_at": now,
                        "updated_at": now,
                    }
                )
                writes.append(self.drivers.record_write(updated_driver))

            try:
                versions = await self.state.commit(writes)
            except VersionConflict:
                self.logger.log_conflict("order", str(order_id), operation="release")
                continue

            updated_order = updated_order.model_copy(update={"version": versions[0]})
            self.orders.logger.log_transition(
                "order",
                str(order_id),
                order.status.value,
                updated_order.status.value,
                versions[0],
                driver_id=str(driver.id),
                reason=reason,
            )

            if updated_driver is not None:
                updated_driver = updated_driver.model_copy(update={"version": versions[1]})
                self.drivers.logger.log_transition(
                    "driver",
                    str(driver.id),
                    driver.status.value,
                    driver_status.value,
                    versions[1],
                    order_id=str(order_id),
                )
                await self.drivers.emit(
                    updated_driver, "driver.status", previous_status=driver.status.value
                )

            await self.orders.emit(
                updated_order,
                "order.requeued" if requeue else "order.status",
                previous_status=order.status.value,
                released_driver_id=str(driver.id),
            )

            if requeue:
                await self.assign(order_id, exclude={driver.id})
                return await self.orders.snapshot(order_id)
            return updated_order

        raise VersionConflict(ORDER_KIND, order_id)
