"""Background staleness correction."""

import asyncio
from contextlib import suppress

from fleetdispatch.state.drivers import DriverStateStore
from fleetdispatch.utils.logging import get_logger

logger = get_logger(__name__)


class StalenessMonitor:
    """Periodically takes silent drivers out of dispatch."""

    def __init__(self, drivers: DriverStateStore, interval_seconds: float):
        self.drivers = drivers
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("staleness_monitor_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("staleness_monitor_stopped")

    async def run_once(self) -> None:
        try:
            demoted = await self.drivers.sweep_stale()
        except Exception as e:
            # A failed sweep is retried on the next tick.
            logger.error("staleness_sweep_failed", error=str(e))
            return

        if demoted:
            logger.info(
                "stale_drivers_demoted",
                count=len(demoted),
                driver_ids=[str(driver_id) for driver_id in demoted],
            )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()
