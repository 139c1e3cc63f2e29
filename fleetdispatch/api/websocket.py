"""WebSocket handlers for realtime driver and order updates."""

import asyncio
import json
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from fleetdispatch.api.connections import ConnectionManager
from fleetdispatch.core import DispatchCore
from fleetdispatch.services.broadcaster import Subscription
from fleetdispatch.utils.logging import get_logger

logger = get_logger(__name__)

SnapshotLoader = Callable[[], Awaitable[Any]]


class WebSocketMessage(BaseModel):
    """Client message format."""

    type: str  # "ping", "resync"


async def send_snapshot(
    manager: ConnectionManager,
    connection_id: str,
    topic: str,
    load_snapshot: SnapshotLoader,
    reason: str,
) -> None:
    """Send the current state of whatever the topic follows."""
    data = await load_snapshot()
    await manager.send_message(
        connection_id,
        {"type": "snapshot", "topic": topic, "reason": reason, "data": data},
    )


async def forward_events(
    manager: ConnectionManager,
    connection_id: str,
    subscription: Subscription,
    load_snapshot: SnapshotLoader,
) -> None:
    """
    Push broadcast events to the client until the subscription ends.

    A sequence gap means the client missed events for an entity; it is sent a
    fresh snapshot instead of the partial history.
    """
    async for event in subscription:
        if subscription.detect_gap(event):
            logger.warning(
                "websocket_sequence_gap",
                connection_id=connection_id,
                entity=event.entity_key,
                sequence=event.sequence,
                dropped=subscription.dropped,
            )
            await send_snapshot(
                manager, connection_id, subscription.topic, load_snapshot, "gap"
            )
            continue

        await manager.send_message(
            connection_id,
            {"type": "event", "event": event.model_dump(mode="json")},
        )


async def receive_commands(
    manager: ConnectionManager,
    websocket: WebSocket,
    connection_id: str,
    topic: str,
    load_snapshot: SnapshotLoader,
) -> None:
    """Answer client messages until the client disconnects."""
    while True:
        data = await websocket.receive_text()

        try:
            ws_message = WebSocketMessage(**json.loads(data))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            await manager.send_message(
                connection_id,
                {
                    "type": "error",
                    "message": "Invalid message format",
                    "details": str(e),
                },
            )
            continue

        if ws_message.type == "ping":
            await manager.send_message(connection_id, {"type": "pong"})

        elif ws_message.type == "resync":
            await send_snapshot(manager, connection_id, topic, load_snapshot, "resync")

        else:
            await manager.send_message(
                connection_id,
                {
                    "type": "error",
                    "message": f"Unknown message type: {ws_message.type}",
                },
            )


async def handle_subscription(
    websocket: WebSocket,
    core: DispatchCore,
    topic: str,
    load_snapshot: SnapshotLoader,
) -> None:
    """
    Stream a broadcast topic to a WebSocket client.

    The client first receives a snapshot, then every event published to the
    topic. The subscription is opened before the snapshot is read, so no
    change falls between the two; events already reflected in the snapshot
    may arrive once more and can be told apart by their sequence numbers.

    Args:
        websocket: WebSocket connection
        core: Dispatch core whose broadcaster is followed and which tracks
            the connection
        topic: Broadcast topic to follow
        load_snapshot: Reads the current state for the topic
    """
    manager = core.connections
    connection_id = str(uuid4())
    await manager.connect(connection_id, topic, websocket)

    subscription = core.broadcaster.subscribe(topic)
    tasks: set[asyncio.Task] = set()

    try:
        await send_snapshot(manager, connection_id, topic, load_snapshot, "initial")

        tasks = {
            asyncio.create_task(
                forward_events(manager, connection_id, subscription, load_snapshot)
            ),
            asyncio.create_task(
                receive_commands(manager, websocket, connection_id, topic, load_snapshot)
            ),
        }
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        for task in done:
            error = task.exception()
            if error is not None:
                raise error

    except WebSocketDisconnect:
        logger.info("websocket_client_disconnected", connection_id=connection_id)

    except Exception as e:
        logger.error(
            "websocket_error",
            connection_id=connection_id,
            topic=topic,
            error=str(e),
        )

    finally:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        subscription.close()
        manager.disconnect(connection_id)
