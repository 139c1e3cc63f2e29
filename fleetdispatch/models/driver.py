"""Driver and location models."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class DriverStatus(str, Enum):
    """Driver availability states."""

    OFFLINE = "offline"
    ONLINE = "online"
    AVAILABLE = "available"
    ON_DELIVERY = "on_delivery"


class Location(BaseModel):
    """Geographic location."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Position(Location):
    """Accepted position sample for a driver."""

    accuracy: float = Field(ge=0)
    captured_at: datetime
    heading: float | None = None
    speed: float | None = None


class LocationFix(BaseModel):
    """Position report as sent by a driver client.

    Ranges are checked by the ingest boundary so that a bad report becomes a
    rejection reason rather than a validation error.
    """

    driver_id: UUID
    lat: float
    lng: float
    accuracy: float
    captured_at: datetime
    heading: float | None = None
    speed: float | None = None

    @field_validator("captured_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Read naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_position(self) -> Position:
        """Convert an accepted fix into a stored position."""
        return Position(
            lat=self.lat,
            lng=self.lng,
            accuracy=self.accuracy,
            captured_at=self.captured_at,
            heading=self.heading,
            speed=self.speed,
        )


class Driver(BaseModel):
    """Delivery driver record."""

    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    status: DriverStatus = DriverStatus.OFFLINE
    position: Position | None = None
    position_stale: bool = False
    approved: bool = False
    active: bool = True
    version: int = 0

    # Dispatch bookkeeping
    current_order_id: UUID | None = None
    last_assigned_at: datetime | None = None
    completed_deliveries: int = 0

    # Liveness
    last_fix_received_at: datetime | None = None
    status_changed_at: datetime = Field(default_factory=utcnow)

    trail: list[Position] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_available(self) -> bool:
        """Check if driver is eligible for assignment."""
        return (
            self.status == DriverStatus.AVAILABLE
            and self.approved
            and self.active
            and self.current_order_id is None
        )

    @property
    def last_seen_at(self) -> datetime:
        """Most recent sign of life: an accepted fix or a status change."""
        if self.last_fix_received_at is None:
            return self.status_changed_at
        return max(self.last_fix_received_at, self.status_changed_at)
