"""Location ingest - validates and records driver position reports."""

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable
from uuid import UUID

from pydantic import BaseModel

from fleetdispatch.config import Settings, get_settings
from fleetdispatch.errors import DriverNotFound, VersionConflict
from fleetdispatch.models.driver import LocationFix, utcnow
from fleetdispatch.state.drivers import DriverStateStore, LocationOutcome
from fleetdispatch.utils.logging import DispatchLogger


class RejectReason(str, Enum):
    """Why a location fix was not recorded."""

    INVALID_LATITUDE = "invalid_latitude"
    INVALID_LONGITUDE = "invalid_longitude"
    INVALID_ACCURACY = "invalid_accuracy"
    INACCURATE = "inaccurate"
    FUTURE_TIMESTAMP = "future_timestamp"
    OUT_OF_ORDER = "out_of_order"
    UNKNOWN_DRIVER = "unknown_driver"
    BUSY = "busy"


class IngestResult(BaseModel):
    """Accept/reject answer returned to the driver client."""

    driver_id: UUID
    accepted: bool
    reason: RejectReason | None = None
    duplicate: bool = False


class LocationIngest:
    """
    Entry point for position reports from driver clients.

    A bad fix is answered with a rejection reason and never raised, so one
    misbehaving client cannot disturb the others.
    """

    def __init__(
        self,
        drivers: DriverStateStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.drivers = drivers
        self.settings = settings or get_settings()
        self.clock = clock
        self.logger = DispatchLogger("location_ingest")

    def validate(self, fix: LocationFix) -> RejectReason | None:
        """Check a fix on its own, without looking at the driver."""
        if not math.isfinite(fix.lat) or not -90 <= fix.lat <= 90:
            return RejectReason.INVALID_LATITUDE

        if not math.isfinite(fix.lng) or not -180 <= fix.lng <= 180:
            return RejectReason.INVALID_LONGITUDE

        if not math.isfinite(fix.accuracy) or fix.accuracy < 0:
            return RejectReason.INVALID_ACCURACY

        if fix.accuracy > self.settings.max_fix_accuracy_m:
            return RejectReason.INACCURATE

        skew = timedelta(seconds=self.settings.clock_skew_tolerance_seconds)
        if fix.captured_at > self.clock() + skew:
            return RejectReason.FUTURE_TIMESTAMP

        return None

    async def record(self, fix: LocationFix) -> IngestResult:
        """
        Validate a fix and apply it to the driver's position.

        Args:
            fix: Position report from a driver client

        Returns:
            IngestResult saying whether the fix was accepted
        """
        reason = self.validate(fix)
        if reason is not None:
            return self._reject(fix, reason)

        try:
            outcome = await self.drivers.apply_location(fix.driver_id, fix)
        except DriverNotFound:
            return self._reject(fix, RejectReason.UNKNOWN_DRIVER)
        except VersionConflict:
            return self._reject(fix, RejectReason.BUSY)

        if outcome == LocationOutcome.STALE:
            return self._reject(fix, RejectReason.OUT_OF_ORDER)

        return IngestResult(
            driver_id=fix.driver_id,
            accepted=True,
            duplicate=outcome == LocationOutcome.DUPLICATE,
        )

    def _reject(self, fix: LocationFix, reason: RejectReason) -> IngestResult:
        self.logger.log_rejection(
            str(fix.driver_id),
            reason.value,
            captured_at=fix.captured_at.isoformat(),
        )
        return IngestResult(driver_id=fix.driver_id, accepted=False, reason=reason)
