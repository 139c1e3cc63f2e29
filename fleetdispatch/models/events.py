"""Realtime event models."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from fleetdispatch.models.driver import utcnow


class EntityType(str, Enum):
    """Entities that carry their own event sequence."""

    DRIVER = "driver"
    ORDER = "order"


class Event(BaseModel):
    """State-change event fanned out to subscribers."""

    entity_type: EntityType
    entity_id: UUID
    kind: str
    sequence: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utcnow)

    @property
    def entity_key(self) -> str:
        """Key the per-entity sequence is tracked under."""
        return f"{self.entity_type.value}:{self.entity_id}"
