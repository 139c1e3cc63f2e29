"""Driver availability state machine and position snapshots."""

from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable
from uuid import UUID

from fleetdispatch.config import Settings, get_settings
from fleetdispatch.errors import (
    DriverNotFound,
    InvalidInput,
    InvalidTransition,
    VersionConflict,
)
from fleetdispatch.models.driver import (
    Driver,
    DriverStatus,
    Location,
    LocationFix,
    Position,
    utcnow,
)
from fleetdispatch.models.events import EntityType
from fleetdispatch.services.broadcaster import RealtimeBroadcaster
from fleetdispatch.state.manager import RecordWrite, StateManager
from fleetdispatch.state.transitions import DriverTransitions
from fleetdispatch.utils.geo import haversine_km
from fleetdispatch.utils.logging import DispatchLogger

if TYPE_CHECKING:
    from fleetdispatch.services.matcher import DispatchMatcher

DRIVER_KIND = "driver"


class LocationOutcome(str, Enum):
    """Result of applying a fix to a driver."""

    APPLIED = "applied"
    STALE = "stale"
    DUPLICATE = "duplicate"


def driver_payload(driver: Driver) -> dict[str, Any]:
    """Driver snapshot as carried by events and API responses."""
    return driver.model_dump(mode="json", exclude={"trail"})


class DriverStateStore:
    """Owns every driver's status and current position.

    All mutations are version-gated. Status changes requested by clients must
    present the version the caller last observed; location updates re-read
    and retry internally since they only ever move the position forward.
    """

    def __init__(
        self,
        state_manager: StateManager,
        broadcaster: RealtimeBroadcaster,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state = state_manager
        self.broadcaster = broadcaster
        self.settings = settings or get_settings()
        self.clock = clock
        self.logger = DispatchLogger("driver_state_store")
        self._dispatcher: "DispatchMatcher | None" = None

    def bind_dispatcher(self, dispatcher: "DispatchMatcher") -> None:
        """Attach the matcher that releases a driver signing off mid-delivery."""
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> "DispatchMatcher":
        if self._dispatcher is None:
            raise RuntimeError("DriverStateStore has no dispatcher bound")
        return self._dispatcher

    def record_write(self, driver: Driver) -> RecordWrite:
        """Build a write of ``driver`` gated on the version it was read at."""
        return RecordWrite(
            DRIVER_KIND,
            driver.id,
            driver.version,
            driver.model_dump(mode="json"),
        )

    async def emit(self, driver: Driver, kind: str, **extra: Any) -> None:
        payload = driver_payload(driver)
        payload.update(extra)
        await self.broadcaster.emit(
            EntityType.DRIVER, driver.id, kind, payload, sequence=driver.version
        )

    async def register(self, driver: Driver) -> Driver:
        """Store a newly onboarded driver."""
        now = self.clock()
        driver = driver.model_copy(
            update={
                "version": 0,
                "current_order_id": None,
                "status_changed_at": now,
                "created_at": now,
                "updated_at": now,
            }
        )
        if driver.status == DriverStatus.ON_DELIVERY:
            raise InvalidInput("A new driver cannot start on a delivery")

        try:
            [version] = await self.state.commit([self.record_write(driver)])
        except VersionConflict as e:
            raise InvalidInput(f"Driver {driver.id} is already registered") from e

        driver = driver.model_copy(update={"version": version})
        self.logger.logger.info(
            "driver_registered",
            driver_id=str(driver.id),
            approved=driver.approved,
        )
        await self.emit(driver, "driver.registered")
        return driver

    async def snapshot(self, driver_id: UUID) -> Driver:
        """Get the current record of a driver."""
        data = await self.state.get(DRIVER_KIND, driver_id)

        if not data:
            raise DriverNotFound(f"Driver {driver_id} not found")

        return Driver.model_validate(data)

    async def list_drivers(self) -> list[Driver]:
        """Get every driver record."""
        records = await self.state.list_records(DRIVER_KIND)
        return [Driver.model_validate(record) for record in records]

    async def list_available(
        self,
        within_radius_km: float | None = None,
        center: Location | None = None,
    ) -> list[Driver]:
        """Get drivers eligible for dispatch.

        With a center, only drivers with a known position are returned,
        nearest first; a radius further limits them to that distance.
        """
        if within_radius_km is not None and center is None:
            raise InvalidInput("A search radius needs a center")

        drivers = [driver for driver in await self.list_drivers() if driver.is_available]

        if center is None:
            return drivers

        ranked = []
        for driver in drivers:
            if driver.position is None:
                continue

            distance = haversine_km(
                center.lat, center.lng, driver.position.lat, driver.position.lng
            )
            if within_radius_km is None or distance <= within_radius_km:
                ranked.append((distance, driver))

        ranked.sort(key=lambda item: item[0])
        return [driver for _, driver in ranked]

    async def history(self, driver_id: UUID) -> list[Position]:
        """Get the trailing history of accepted positions, oldest first."""
        driver = await self.snapshot(driver_id)
        return driver.trail

    async def set_status(
        self,
        driver_id: UUID,
        requested_status: DriverStatus,
        expected_version: int,
        *,
        override: bool = False,
    ) -> int:
        """
        Move a driver to a new status.

        A driver signing off mid-delivery is released by the dispatcher, which
        puts its order back in the queue for another driver.

        Args:
            driver_id: Driver to update
            requested_status: Status to move to
            expected_version: Version the caller last observed
            override: Administrative change outside the normal flow

        Returns:
            The driver's new version

        Raises:
            VersionConflict: If the driver changed since the caller read it
            InvalidTransition: If the status is not reachable
        """
        driver = await self.snapshot(driver_id)

        if driver.version != expected_version:
            raise VersionConflict(DRIVER_KIND, driver_id, expected_version, driver.version)

        if driver.status == requested_status:
            return driver.version

        if (
            not override
            and driver.status == DriverStatus.ON_DELIVERY
            and requested_status == DriverStatus.OFFLINE
            and driver.current_order_id is not None
        ):
            return await self._sign_off_mid_delivery(driver)

        self._check_transition(driver, requested_status, override)

        now = self.clock()
        updated = driver.model_copy(
            update={
                "status": requested_status,
                "status_changed_at": now,
                "updated_at": now,
            }
        )
        [version] = await self.state.commit([self.record_write(updated)])
        updated = updated.model_copy(update={"version": version})

        self.logger.log_transition(
            "driver",
            str(driver_id),
            driver.status.value,
            requested_status.value,
            version,
            override=override,
        )
        await self.emit(updated, "driver.status", previous_status=driver.status.value)
        return version

    async def _sign_off_mid_delivery(self, driver: Driver) -> int:
        await self.dispatcher.release(
            driver.current_order_id,
            requeue=True,
            driver_status=DriverStatus.OFFLINE,
            reason="driver_signed_off",
        )
        released = await self.snapshot(driver.id)

        if released.status != DriverStatus.OFFLINE:
            # The order closed under us and the driver was freed instead.
            raise VersionConflict(DRIVER_KIND, driver.id, driver.version, released.version)

        self.logger.logger.info(
            "driver_signed_off_mid_delivery",
            driver_id=str(driver.id),
            order_id=str(driver.current_order_id),
        )
        return released.version

    def _check_transition(
        self,
        driver: Driver,
        requested_status: DriverStatus,
        override: bool,
    ) -> None:
        current = driver.status

        if override:
            if not DriverTransitions.can_override(current, requested_status):
                raise InvalidTransition(
                    current.value, requested_status.value, "not an allowed override"
                )
        elif not DriverTransitions.can_transition(current, requested_status):
            raise InvalidTransition(current.value, requested_status.value)
        elif DriverTransitions.is_dispatch_only(current, requested_status):
            raise InvalidTransition(
                current.value, requested_status.value, "only dispatch may make this change"
            )

        if requested_status != DriverStatus.OFFLINE:
            if not driver.approved:
                raise InvalidTransition(
                    current.value, requested_status.value, "driver is not approved"
                )
            if not driver.active:
                raise InvalidTransition(
                    current.value, requested_status.value, "driver is deactivated"
                )

    async def deactivate(self, driver_id: UUID, expected_version: int) -> int:
        """Take a driver out of service permanently."""
        driver = await self.snapshot(driver_id)

        if driver.version != expected_version:
            raise VersionConflict(DRIVER_KIND, driver_id, expected_version, driver.version)

        if driver.status == DriverStatus.ON_DELIVERY:
            raise InvalidTransition(
                driver.status.value, DriverStatus.OFFLINE.value, "driver is on a delivery"
            )

        now = self.clock()
        updated = driver.model_copy(
            update={
                "status": DriverStatus.OFFLINE,
                "active": False,
                "status_changed_at": now,
                "updated_at": now,
            }
        )
        [version] = await self.state.commit([self.record_write(updated)])
        updated = updated.model_copy(update={"version": version})

        self.logger.logger.info("driver_deactivated", driver_id=str(driver_id))
        await self.emit(updated, "driver.deactivated")
        return version

    async def apply_location(self, driver_id: UUID, fix: LocationFix) -> LocationOutcome:
        """Move a driver's position forward to ``fix``.

        Fixes older than the current position are stale; a replay of the
        current fix is a duplicate. Neither changes the record.
        """
        position = fix.to_position()

        for _ in range(self.settings.max_commit_retries):
            driver = await self.snapshot(driver_id)
            current = driver.position

            if current is not None:
                if position.captured_at < current.captured_at:
                    return LocationOutcome.STALE
                if position.captured_at == current.captured_at and (
                    (position.lat, position.lng, position.accuracy)
                    == (current.lat, current.lng, current.accuracy)
                ):
                    return LocationOutcome.DUPLICATE

            now = self.clock()
            trail = driver.trail
            if self.settings.location_history_size:
                trail = (trail + [position])[-self.settings.location_history_size:]

            updated = driver.model_copy(
                update={
                    "position": position,
                    "position_stale": False,
                    "last_fix_received_at": now,
                    "trail": trail,
                    "updated_at": now,
                }
            )

            try:
                [version] = await self.state.commit([self.record_write(updated)])
            except VersionConflict:
                self.logger.log_conflict("driver", str(driver_id), operation="apply_location")
                continue

            updated = updated.model_copy(update={"version": version})
            await self.emit(updated, "driver.location")
            return LocationOutcome.APPLIED

        raise VersionConflict(DRIVER_KIND, driver_id)

    async def sweep_stale(self, now: datetime | None = None) -> list[UUID]:
        """
        Take silent drivers out of dispatch.

        Online and available drivers that have not reported within the
        staleness timeout go offline. Drivers on a delivery keep their status
        and only have their position flagged as stale.

        Returns:
            IDs of drivers moved to offline
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.settings.location_stale_after_seconds)
        demoted = []

        for driver in await self.list_drivers():
            if driver.last_seen_at >= cutoff:
                continue

            if driver.status in (DriverStatus.ONLINE, DriverStatus.AVAILABLE):
                updated = driver.model_copy(
                    update={
                        "status": DriverStatus.OFFLINE,
                        "status_changed_at": now,
                        "updated_at": now,
                    }
                )
                kind = "driver.status"
            elif driver.status == DriverStatus.ON_DELIVERY and not driver.position_stale:
                updated = driver.model_copy(
                    update={"position_stale": True, "updated_at": now}
                )
                kind = "driver.position_stale"
            else:
                continue

            try:
                [version] = await self.state.commit([self.record_write(updated)])
            except VersionConflict:
                # The driver just changed; the next sweep looks again.
                self.logger.log_conflict("driver", str(driver.id), operation="sweep_stale")
                continue

            updated = updated.model_copy(update={"version": version})

            if kind == "driver.status":
                demoted.append(driver.id)
                self.logger.log_transition(
                    "driver",
                    str(driver.id),
                    driver.status.value,
                    DriverStatus.OFFLINE.value,
                    version,
                    reason="location_timeout",
                )
                await self.emit(
                    updated,
                    kind,
                    previous_status=driver.status.value,
                    reason="location_timeout",
                )
            else:
                self.logger.logger.warning(
                    "driver_position_stale",
                    driver_id=str(driver.id),
                    order_id=str(driver.current_order_id),
                )
                await self.emit(updated, kind)

        return demoted
