"""Assignment attempt tracing."""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generator
from uuid import UUID

from fleetdispatch.models.driver import utcnow
from fleetdispatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TraceEvent:
    """Individual step of an assignment."""

    timestamp: datetime
    event_type: str
    order_id: UUID
    driver_id: UUID | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class DispatchTracer:
    """Traces the candidates tried while assigning one order."""

    def __init__(self, order_id: UUID):
        self.order_id = order_id
        self.events: list[TraceEvent] = []
        self.start_time = time.time()

    def add_event(
        self,
        event_type: str,
        driver_id: UUID | None = None,
        duration_ms: float | None = None,
        **metadata: Any,
    ) -> None:
        """Add a trace event."""
        event = TraceEvent(
            timestamp=utcnow(),
            event_type=event_type,
            order_id=self.order_id,
            driver_id=driver_id,
            duration_ms=duration_ms,
            metadata=metadata,
        )
        self.events.append(event)

        logger.debug(
            "trace_event",
            order_id=str(self.order_id),
            event_type=event_type,
            driver_id=str(driver_id) if driver_id else None,
            duration_ms=duration_ms,
            **metadata,
        )

    @contextmanager
    def trace_attempt(
        self, driver_id: UUID, **metadata: Any
    ) -> Generator[dict[str, Any], None, None]:
        """Time one candidate; the block may add details to the yielded dict."""
        start = time.time()
        details = dict(metadata)
        try:
            yield details
        finally:
            duration_ms = (time.time() - start) * 1000
            self.add_event("candidate_attempt", driver_id, duration_ms=duration_ms, **details)

    @property
    def attempts(self) -> int:
        return sum(1 for event in self.events if event.event_type == "candidate_attempt")

    def get_trace_summary(self) -> dict[str, Any]:
        """Get a summary of the trace."""
        total_duration = (time.time() - self.start_time) * 1000

        return {
            "order_id": str(self.order_id),
            "total_duration_ms": total_duration,
            "attempts": self.attempts,
            "events": [
                {
                    "timestamp": event.timestamp.isoformat(),
                    "event_type": event.event_type,
                    "driver_id": str(event.driver_id) if event.driver_id else None,
                    "duration_ms": event.duration_ms,
                    "metadata": event.metadata,
                }
                for event in self.events
            ],
        }
