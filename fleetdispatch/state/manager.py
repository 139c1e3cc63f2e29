"""Versioned record store shared by the driver and order stores.

Records are JSON documents keyed by ``<kind>:<id>``. Every record carries a
``version``; a write is accepted only if the caller's expected version still
matches, and a multi-record commit is applied entirely or not at all.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import redis.asyncio as redis
from redis.exceptions import WatchError

from fleetdispatch.config import Settings, get_settings
from fleetdispatch.errors import VersionConflict
from fleetdispatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RecordWrite:
    """One compare-and-set write inside a commit.

    ``expected_version`` 0 means the record must not exist yet.
    """

    kind: str
    entity_id: UUID | str
    expected_version: int
    data: dict[str, Any]

    @property
    def key(self) -> str:
        return record_key(self.kind, self.entity_id)


def record_key(kind: str, entity_id: UUID | str) -> str:
    """Generate the storage key for a record."""
    return f"{kind}:{entity_id}"


def index_key(kind: str) -> str:
    """Generate the key of the id index for a record kind."""
    return f"index:{kind}"


def _versioned(write: RecordWrite) -> dict[str, Any]:
    data = dict(write.data)
    data["version"] = write.expected_version + 1
    return data


class StateManager(ABC):
    """Read/write contract for persisted driver and order records."""

    async def connect(self) -> None:
        """Open the backing connection."""

    async def disconnect(self) -> None:
        """Release the backing connection."""

    @abstractmethod
    async def get(self, kind: str, entity_id: UUID | str) -> dict[str, Any] | None:
        """Get a record, or None if it does not exist."""

    @abstractmethod
    async def list_records(self, kind: str) -> list[dict[str, Any]]:
        """Get every record of a kind."""

    @abstractmethod
    async def commit(self, writes: list[RecordWrite]) -> list[int]:
        """Apply all writes atomically and return the new versions.

        Raises VersionConflict naming the first record whose stored version
        differs from the expected one; nothing is written in that case.
        """

    @abstractmethod
    async def publish(self, channel: str, message: str) -> None:
        """Publish a message to other processes."""

    @abstractmethod
    async def flush(self) -> None:
        """Delete every record."""


class MemoryStateManager(StateManager):
    """In-process record store.

    Records are kept serialized so that callers never share mutable state
    with the store.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    async def get(self, kind: str, entity_id: UUID | str) -> dict[str, Any] | None:
        raw = self._records.get(kind, {}).get(str(entity_id))
        return json.loads(raw) if raw is not None else None

    async def list_records(self, kind: str) -> list[dict[str, Any]]:
        return [json.loads(raw) for raw in self._records.get(kind, {}).values()]

    async def commit(self, writes: list[RecordWrite]) -> list[int]:
        async with self._lock:
            for write in writes:
                raw = self._records.get(write.kind, {}).get(str(write.entity_id))
                actual = json.loads(raw)["version"] if raw is not None else 0
                if actual != write.expected_version:
                    raise VersionConflict(
                        write.kind, write.entity_id, write.expected_version, actual
                    )

            versions = []
            for write in writes:
                data = _versioned(write)
                self._records.setdefault(write.kind, {})[str(write.entity_id)] = (
                    json.dumps(data)
                )
                versions.append(data["version"])

        logger.debug("state_committed", keys=[write.key for write in writes])
        return versions

    async def publish(self, channel: str, message: str) -> None:
        # Single-process deployments fan out through the broadcaster only.
        logger.debug("message_published", channel=channel)

    async def flush(self) -> None:
        async with self._lock:
            self._records.clear()


class RedisStateManager(StateManager):
    """Record store backed by Redis."""

    def __init__(self, redis_url: str | None = None) -> None:
        self.redis_client: redis.Redis | None = None
        self.redis_url = redis_url or get_settings().redis_url

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self.redis_client is None:
            self.redis_client = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("redis_connected", url=self.redis_url)

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("redis_disconnected")

    async def get(self, kind: str, entity_id: UUID | str) -> dict[str, Any] | None:
        if not self.redis_client:
            await self.connect()

        value = await self.redis_client.get(record_key(kind, entity_id))
        return json.loads(value) if value else None

    async def list_records(self, kind: str) -> list[dict[str, Any]]:
        if not self.redis_client:
            await self.connect()

        ids = await self.redis_client.smembers(index_key(kind))
        if not ids:
            return []

        values = await self.redis_client.mget([record_key(kind, i) for i in ids])
        return [json.loads(value) for value in values if value]

    async def commit(self, writes: list[RecordWrite]) -> list[int]:
        if not self.redis_client:
            await self.connect()

        keys = [write.key for write in writes]
        async with self.redis_client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(*keys)

                for write in writes:
                    value = await pipe.get(write.key)
                    actual = json.loads(value)["version"] if value else 0
                    if actual != write.expected_version:
                        raise VersionConflict(
                            write.kind, write.entity_id, write.expected_version, actual
                        )

                pipe.multi()
                versions = []
                for write in writes:
                    data = _versioned(write)
                    pipe.set(write.key, json.dumps(data))
                    pipe.sadd(index_key(write.kind), str(write.entity_id))
                    versions.append(data["version"])

                await pipe.execute()

            except WatchError as e:
                # Another client touched a watched key between read and EXEC.
                first = writes[0]
                raise VersionConflict(first.kind, first.entity_id) from e

        logger.debug("state_committed", keys=keys)
        return versions

    async def publish(self, channel: str, message: str) -> None:
        """Publish a message to a channel."""
        if not self.redis_client:
            await self.connect()

        await self.redis_client.publish(channel, message)
        logger.debug("message_published", channel=channel)

    async def flush(self) -> None:
        if not self.redis_client:
            await self.connect()

        async for index in self.redis_client.scan_iter(match="index:*"):
            kind = index.split(":", 1)[1]
            ids = await self.redis_client.smembers(index)
            if ids:
                await self.redis_client.delete(*[record_key(kind, i) for i in ids])
            await self.redis_client.delete(index)


def create_state_manager(settings: Settings | None = None) -> StateManager:
    """Build the record store selected by configuration."""
    settings = settings or get_settings()

    if settings.state_backend == "redis":
        return RedisStateManager(settings.redis_url)
    return MemoryStateManager()
